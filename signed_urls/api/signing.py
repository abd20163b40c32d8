# S3 signing primitive: input validation, boto3 presigning, and error translation.
# boto3 is blocking, so every S3 call runs in a worker thread.

import asyncio
import logging
import mimetypes
import re
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from botocore.exceptions import BotoCoreError, ClientError

from signed_urls.api.errors import InvalidInput, ObjectNotFound, RateLimited, UpstreamSigningFailure
from signed_urls.shared import MAX_PRESIGNED_EXPIRES

log = logging.getLogger(__name__)

# Operation kind -> boto3 client method it presigns.
OPERATIONS = {
    "get": "get_object",
    "put": "put_object",
    "delete": "delete_object",
}

# get_object overrides a caller may bake into the URL.
RESPONSE_HEADER_PARAMS = frozenset({
    "ResponseCacheControl",
    "ResponseContentDisposition",
    "ResponseContentEncoding",
    "ResponseContentLanguage",
    "ResponseContentType",
    "ResponseExpires",
})

DEFAULT_CONTENT_TYPE = "application/octet-stream"
MAX_KEY_BYTES = 1024

_BUCKET_RE = re.compile(r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
_THROTTLE_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "TooManyRequests",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "503",
}

_AMZ_DATE_FMT = "%Y%m%dT%H%M%SZ"


def validate_request(operation: str, bucket: str, path: str, expires_in) -> Tuple[str, str, str, int]:
    """Return normalized (operation, bucket, path, expires_in) or raise InvalidInput."""
    op = operation.strip().lower() if isinstance(operation, str) else ""
    if op not in OPERATIONS:
        raise InvalidInput(f"Unsupported operation {operation!r}; expected one of {sorted(OPERATIONS)}")

    bucket = bucket.strip() if isinstance(bucket, str) else ""
    if not _BUCKET_RE.match(bucket) or ".." in bucket:
        raise InvalidInput(f"Invalid bucket name {bucket!r}")

    if not isinstance(path, str) or not path:
        raise InvalidInput("Object path must be a non-empty string")
    if path.startswith("/"):
        raise InvalidInput("Object path must not start with '/'")
    if len(path.encode("utf-8")) > MAX_KEY_BYTES:
        raise InvalidInput(f"Object path longer than {MAX_KEY_BYTES} bytes")
    if _CONTROL_CHARS_RE.search(path):
        raise InvalidInput("Object path contains control characters")
    if any(part in (".", "..") for part in path.split("/")):
        raise InvalidInput("Object path must not contain '.' or '..' segments")

    if isinstance(expires_in, bool) or not isinstance(expires_in, int):
        raise InvalidInput("expires_in must be an integer number of seconds")
    if not 1 <= expires_in <= MAX_PRESIGNED_EXPIRES:
        raise InvalidInput(f"expires_in must be between 1 and {MAX_PRESIGNED_EXPIRES} seconds")

    return op, bucket, path, expires_in


def guess_content_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or DEFAULT_CONTENT_TYPE


def signature_expiry(url: str, fallback: float) -> float:
    """
    Epoch seconds at which the signature in *url* stops being valid.
    SigV4 carries X-Amz-Date + X-Amz-Expires, SigV2 an absolute Expires; fallback otherwise.
    """
    query = parse_qs(urlsplit(url).query)
    amz_date = query.get("X-Amz-Date")
    amz_expires = query.get("X-Amz-Expires")
    if amz_date and amz_expires:
        try:
            signed_at = datetime.strptime(amz_date[0], _AMZ_DATE_FMT).replace(tzinfo=UTC)
            return signed_at.timestamp() + int(amz_expires[0])
        except ValueError:
            log.warning(f"Unparseable SigV4 expiry in presigned URL date={amz_date[0]} expires={amz_expires[0]}")
    expires = query.get("Expires")
    if expires:
        try:
            return float(expires[0])
        except ValueError:
            log.warning(f"Unparseable SigV2 expiry in presigned URL expires={expires[0]}")
    return fallback


def translate_client_error(exc: ClientError, bucket: str, key: str) -> UpstreamSigningFailure:
    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    if code in _NOT_FOUND_CODES or status == 404:
        return ObjectNotFound(f"Object not found: s3://{bucket}/{key}")
    if code in _THROTTLE_CODES or status in (429, 503):
        return RateLimited(f"S3 throttled request for s3://{bucket}/{key} ({code or status})")
    return UpstreamSigningFailure(f"S3 error for s3://{bucket}/{key}: {code or status}")


@dataclass(frozen=True)
class SignedUrl:
    url: str
    issued_at: float
    expires_at: float
    content_type: str


class S3Signer:
    """
    Presign S3 requests with a boto3 client.

    For "get" the object is HEADed first (verify_exists=True) so a missing key
    fails fast with ObjectNotFound and the stored ContentType becomes the hint.
    """

    def __init__(self, s3_client, *, verify_exists: bool = True, clock: Callable[[], float] = time.time):
        self._s3 = s3_client
        self._verify_exists = verify_exists
        self._clock = clock

    async def sign(
        self,
        bucket: str,
        key: str,
        operation: str,
        expires_in: int,
        response_headers: Optional[Mapping[str, str]] = None,
    ) -> SignedUrl:
        if operation not in OPERATIONS:
            raise InvalidInput(f"Unsupported operation {operation!r}")
        if response_headers:
            if operation != "get":
                raise InvalidInput("Response header overrides only apply to 'get'")
            unknown = set(response_headers) - RESPONSE_HEADER_PARAMS
            if unknown:
                raise InvalidInput(f"Unsupported response header overrides: {sorted(unknown)}")
        return await asyncio.to_thread(
            self._sign_blocking, bucket, key, operation, expires_in, dict(response_headers or {})
        )

    def _head_content_type(self, bucket: str, key: str) -> Optional[str]:
        try:
            head = self._s3.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise translate_client_error(e, bucket, key) from e
        except BotoCoreError as e:
            raise UpstreamSigningFailure(f"S3 HEAD failed for s3://{bucket}/{key}: {e}") from e
        return head.get("ContentType")

    def _sign_blocking(
        self, bucket: str, key: str, operation: str, expires_in: int, response_headers: dict
    ) -> SignedUrl:
        content_type = None
        if operation == "get" and self._verify_exists:
            content_type = self._head_content_type(bucket, key)

        params = {"Bucket": bucket, "Key": key, **response_headers}
        issued_at = self._clock()
        try:
            url = self._s3.generate_presigned_url(
                OPERATIONS[operation],
                Params=params,
                ExpiresIn=expires_in,
            )
        except ClientError as e:
            raise translate_client_error(e, bucket, key) from e
        except BotoCoreError as e:
            raise UpstreamSigningFailure(f"Presigning failed for s3://{bucket}/{key}: {e}") from e

        expires_at = signature_expiry(url, fallback=issued_at + expires_in)
        log.debug(f"Presigned {operation} bucket={bucket} key={key} expires_in={expires_in}")
        return SignedUrl(
            url=url,
            issued_at=issued_at,
            expires_at=expires_at,
            content_type=content_type or guess_content_type(key),
        )
