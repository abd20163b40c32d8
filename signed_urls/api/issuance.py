"""Signed-URL issuance: cache first, S3 signing on miss, write-through.

``issue`` serves one request. ``issue_batch`` resolves many paths with one
batched cache lookup, then signs the misses in waves of at most ``wave_size``
concurrent S3 calls. Each wave is fully resolved (success or failure) before
the next one starts after ``wave_delay`` seconds. A failing item never aborts
the rest of the batch; its error is reported in its own result.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

from signed_urls.api.errors import SigningError
from signed_urls.api.retry import RetryPolicy
from signed_urls.api.signing import S3Signer, validate_request
from signed_urls.api.url_cache import CacheEntry, CacheService, derive_key
from signed_urls.shared import BATCH_WAVE_DELAY, BATCH_WAVE_SIZE, DEFAULT_BUCKET, PRESIGNED_EXPIRES

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchResult:
    path: str
    entry: Optional[CacheEntry] = None
    error: Optional[str] = None
    code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.entry is not None


class SignedUrlIssuer:
    def __init__(
        self,
        cache: CacheService,
        signer: S3Signer,
        *,
        cache_ttl: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        wave_size: int = BATCH_WAVE_SIZE,
        wave_delay: float = BATCH_WAVE_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if wave_size < 1:
            raise ValueError(f"wave_size must be >= 1, got {wave_size}")
        self.cache = cache
        self.signer = signer
        # Normally shorter than the signature lifetime so entries recycle before the safety buffer.
        self.cache_ttl = cache_ttl if cache_ttl is not None else cache.config.ttl_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self.wave_size = wave_size
        self.wave_delay = wave_delay
        self._sleep = sleep

    async def _sign_entry(self, operation: str, bucket: str, path: str, expires_in: int) -> CacheEntry:
        signed = await self.retry_policy.call(self.signer.sign, bucket, path, operation, expires_in)
        return CacheEntry(
            url=signed.url,
            path=path,
            bucket=bucket,
            operation=operation,
            content_type=signed.content_type,
            issued_at=signed.issued_at,
            expires_at=signed.expires_at,
            from_cache=False,
            cache_key=derive_key(operation, bucket, path),
        )

    async def issue(
        self,
        operation: str,
        bucket: str,
        path: str,
        expires_in: int = PRESIGNED_EXPIRES,
    ) -> CacheEntry:
        """Return a cached or freshly signed URL. Raises InvalidInput / UpstreamSigningFailure."""
        operation, bucket, path, expires_in = validate_request(operation, bucket, path, expires_in)

        cached = await self.cache.read(operation, bucket, path)
        if cached is not None:
            return cached

        entry = await self._sign_entry(operation, bucket, path, expires_in)
        # The entry is valid for other readers even if our caller has gone away.
        await asyncio.shield(self.cache.write(operation, bucket, path, entry, self.cache_ttl))
        log.info(f"Issued signed URL operation={operation} bucket={bucket} path={path}")
        return entry

    async def issue_batch(
        self,
        paths: Sequence[str],
        operation: str = "get",
        bucket: str = DEFAULT_BUCKET,
        expires_in: int = PRESIGNED_EXPIRES,
    ) -> list[BatchResult]:
        """One result per input path, in input order."""
        results: list[Optional[BatchResult]] = [None] * len(paths)

        valid = []
        for i, raw in enumerate(paths):
            try:
                valid.append((i, *validate_request(operation, bucket, raw, expires_in)))
            except SigningError as e:
                results[i] = BatchResult(path=str(raw), error=e.message, code=e.code)

        cached = {}
        if valid:
            cached = await self.cache.read_batch((op, b, p) for _, op, b, p, _ in valid)

        # Duplicate paths share one signing call.
        waiting: dict[str, list[int]] = {}
        jobs = []
        for i, op, b, p, exp in valid:
            key = derive_key(op, b, p)
            hit = cached.get(key)
            if hit is not None:
                results[i] = BatchResult(path=p, entry=hit)
            elif key in waiting:
                waiting[key].append(i)
            else:
                waiting[key] = [i]
                jobs.append((key, op, b, p, exp))

        for wave_no, start in enumerate(range(0, len(jobs), self.wave_size), start=1):
            if start:
                await self._sleep(self.wave_delay)
            wave = jobs[start:start + self.wave_size]
            outcomes = await asyncio.gather(
                *(self._sign_entry(op, b, p, exp) for _, op, b, p, exp in wave),
                return_exceptions=True,
            )
            to_cache = []
            failed = 0
            for (key, _op, _b, p, _exp), outcome in zip(wave, outcomes):
                if isinstance(outcome, SigningError):
                    result = BatchResult(path=p, error=outcome.message, code=outcome.code)
                    failed += 1
                elif isinstance(outcome, Exception):
                    log.error(f"Unexpected error signing path={p}", exc_info=outcome)
                    result = BatchResult(path=p, error="Internal error", code="internal_error")
                    failed += 1
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    result = BatchResult(path=p, entry=outcome)
                    to_cache.append((key, outcome, self.cache_ttl))
                for i in waiting[key]:
                    results[i] = result
            if to_cache:
                await asyncio.shield(self.cache.write_batch(to_cache))
            log.info(f"Batch wave {wave_no}: signed={len(wave) - failed} failed={failed}")

        return results

    async def invalidate_path(self, path: str, bucket: str = DEFAULT_BUCKET) -> None:
        _, bucket, path, _ = validate_request("get", bucket, path, 1)
        await self.cache.invalidate_path(path, bucket)

    async def invalidate_by_pattern(self, substring: str) -> int:
        return await self.cache.invalidate_by_pattern(substring)

    def stats(self) -> dict[str, Any]:
        return self.cache.stats()
