"""Typed failures of the issuance path.

Cache-tier problems are not raised: an unreachable Redis is reported
through ``RedisCache.is_available()`` and a warning log.
"""


class SigningError(Exception):
    """Base class for failures surfaced to callers of ``issue``/``issue_batch``."""

    code = "signing_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(SigningError, ValueError):
    """Malformed operation, bucket, path or expiry. Raised before any cache or S3 call."""

    code = "invalid_input"


class UpstreamSigningFailure(SigningError):
    """The S3 signing primitive failed."""

    code = "upstream_failure"


class ObjectNotFound(UpstreamSigningFailure):
    code = "not_found"


class RateLimited(UpstreamSigningFailure):
    """S3 asked us to slow down. The only failure that is retried."""

    code = "rate_limited"
