"""Shared fixtures: moto-mocked S3 bucket, FastAPI TestClient, fake clock and fake Redis clients."""

import os
import re

import boto3
import pytest
from moto import mock_aws
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from starlette.testclient import TestClient

os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

BUCKET = "signed-url-assets"

SEEDED_OBJECTS = {
    "images/cat.png": "image/png",
    "images/dog.jpg": "image/jpeg",
    "docs/report.pdf": "application/pdf",
    "docs/notes.txt": "text/plain",
}


@pytest.fixture(scope="session")
def _mock_aws_session():
    """Session-wide moto mock: keeps the fake S3 alive for all tests."""
    with mock_aws():
        s3 = boto3.client("s3", region_name="us-east-1")
        s3.create_bucket(Bucket=BUCKET)
        for key, content_type in SEEDED_OBJECTS.items():
            s3.put_object(Bucket=BUCKET, Key=key, Body=b"\x00" * 32, ContentType=content_type)
        yield


@pytest.fixture
def s3_client(_mock_aws_session):
    return boto3.client("s3", region_name="us-east-1")


@pytest.fixture(scope="session")
def client(_mock_aws_session):
    """FastAPI TestClient over mocked S3. No SIGNED_URL_REDIS_URL, so the cache is local-only."""
    os.environ.pop("SIGNED_URL_REDIS_URL", None)
    from signed_urls.api.main import app

    with TestClient(app) as c:
        yield c


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable epoch clock that only moves when told to."""

    def __init__(self, now: float = 1_800_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


def _glob_to_regex(pattern: str) -> re.Pattern:
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("^" + "".join(out) + "$", re.DOTALL)


class FakePipeline:
    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def setex(self, key, ttl, value):
        self._ops.append((key, ttl, value))
        return self

    async def execute(self):
        self._redis.calls.append(("pipeline", len(self._ops)))
        self._redis._check()
        if self._redis.fail_pipeline:
            raise ResponseError("pipeline rejected")
        for key, ttl, value in self._ops:
            self._redis.store[key] = value
            self._redis.ttls[key] = ttl
        return [True] * len(self._ops)


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis (decode_responses=True)."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.calls = []
        self.down = False
        self.fail_pipeline = False
        self.closed = False

    def _check(self):
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def ping(self):
        self.calls.append(("ping",))
        self._check()
        return True

    async def get(self, key):
        self.calls.append(("get", key))
        self._check()
        return self.store.get(key)

    async def mget(self, keys):
        self.calls.append(("mget", list(keys)))
        self._check()
        return [self.store.get(k) for k in keys]

    async def setex(self, key, ttl, value):
        self.calls.append(("setex", key, ttl))
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    async def delete(self, *keys):
        self.calls.append(("delete", *keys))
        self._check()
        n = 0
        for k in keys:
            if self.store.pop(k, None) is not None:
                self.ttls.pop(k, None)
                n += 1
        return n

    async def scan_iter(self, match=None, count=None):
        self.calls.append(("scan", match))
        self._check()
        regex = _glob_to_regex(match) if match else None
        for key in list(self.store):
            if regex is None or regex.match(key):
                yield key

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def make_redis_cache():
    """Factory: RedisCache over a FakeRedis with instant backoff. Records backoff delays in .delays."""
    from signed_urls.api.redis_cache import RedisCache

    def _make(fake, max_retries=3):
        delays = []

        async def _sleep(seconds):
            delays.append(seconds)

        cache = RedisCache(fake, max_retries=max_retries, base_delay=0.5, max_delay=8.0, sleep=_sleep)
        cache.delays = delays
        return cache

    return _make
