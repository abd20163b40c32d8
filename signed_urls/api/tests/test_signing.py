"""Tests for request validation, presigned URL expiry parsing and the moto-backed S3 signer."""

import asyncio
import time

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from signed_urls.api.errors import InvalidInput, ObjectNotFound, RateLimited, UpstreamSigningFailure
from signed_urls.api.signing import (
    S3Signer,
    guess_content_type,
    signature_expiry,
    translate_client_error,
    validate_request,
)
from signed_urls.api.tests.conftest import BUCKET
from signed_urls.shared import MAX_PRESIGNED_EXPIRES


def run_async(coro):
    return asyncio.run(coro)


def _client_error(code, status=None, op="HeadObject"):
    response = {"Error": {"Code": code, "Message": "boom"}}
    if status is not None:
        response["ResponseMetadata"] = {"HTTPStatusCode": status}
    return ClientError(response, op)


# ── validate_request ─────────────────────────────────────────────────────────


class TestValidateRequest:
    def test_normalizes_operation(self):
        assert validate_request(" GET ", BUCKET, "images/cat.png", 60) == ("get", BUCKET, "images/cat.png", 60)

    @pytest.mark.parametrize("operation", ["list", "", None, 3])
    def test_unknown_operation(self, operation):
        with pytest.raises(InvalidInput):
            validate_request(operation, BUCKET, "a.png", 60)

    @pytest.mark.parametrize("bucket", ["", "A-Bucket", "ab", "bad..bucket", "-lead", None])
    def test_bad_bucket(self, bucket):
        with pytest.raises(InvalidInput):
            validate_request("get", bucket, "a.png", 60)

    @pytest.mark.parametrize(
        "path",
        ["", None, "/abs/path.png", "a/../b.png", "./a.png", "a/\x00b.png", "line\nbreak", "x" * 1025],
    )
    def test_bad_path(self, path):
        with pytest.raises(InvalidInput):
            validate_request("get", BUCKET, path, 60)

    def test_path_limit_counts_bytes(self):
        # 512 two-byte characters is 1024 bytes: allowed; one more is not.
        validate_request("get", BUCKET, "é" * 512, 60)
        with pytest.raises(InvalidInput):
            validate_request("get", BUCKET, "é" * 513, 60)

    def test_unicode_and_spaces_allowed(self):
        assert validate_request("get", BUCKET, "docs/annual report ü.pdf", 60)[2] == "docs/annual report ü.pdf"

    @pytest.mark.parametrize("expires_in", [0, -5, MAX_PRESIGNED_EXPIRES + 1, "60", 1.5, True])
    def test_bad_expiry(self, expires_in):
        with pytest.raises(InvalidInput):
            validate_request("get", BUCKET, "a.png", expires_in)

    def test_expiry_bounds_inclusive(self):
        validate_request("get", BUCKET, "a.png", 1)
        validate_request("get", BUCKET, "a.png", MAX_PRESIGNED_EXPIRES)

    def test_invalid_input_is_a_value_error(self):
        with pytest.raises(ValueError):
            validate_request("get", BUCKET, "", 60)


# ── expiry parsing & error translation ───────────────────────────────────────


class TestSignatureExpiry:
    def test_sigv4(self):
        url = (
            "https://b.s3.amazonaws.com/a.png?X-Amz-Algorithm=AWS4-HMAC-SHA256"
            "&X-Amz-Date=20300101T000000Z&X-Amz-Expires=3600&X-Amz-Signature=abc"
        )
        assert signature_expiry(url, fallback=0) == 1893456000 + 3600

    def test_sigv2(self):
        url = "https://b.s3.amazonaws.com/a.png?AWSAccessKeyId=x&Expires=1900000000&Signature=abc"
        assert signature_expiry(url, fallback=0) == 1900000000

    def test_fallback_when_absent(self):
        assert signature_expiry("https://b.s3.amazonaws.com/a.png", fallback=42.0) == 42.0

    def test_fallback_when_garbled(self):
        url = "https://b/a.png?X-Amz-Date=yesterday&X-Amz-Expires=60"
        assert signature_expiry(url, fallback=7.0) == 7.0


class TestTranslateClientError:
    @pytest.mark.parametrize("code,status", [("404", 404), ("NoSuchKey", None), ("Weird", 404)])
    def test_not_found(self, code, status):
        assert isinstance(translate_client_error(_client_error(code, status), BUCKET, "k"), ObjectNotFound)

    @pytest.mark.parametrize("code,status", [("SlowDown", 503), ("Throttling", None), ("", 429)])
    def test_throttled(self, code, status):
        assert isinstance(translate_client_error(_client_error(code, status), BUCKET, "k"), RateLimited)

    def test_everything_else_is_upstream_failure(self):
        err = translate_client_error(_client_error("AccessDenied", 403), BUCKET, "k")
        assert type(err) is UpstreamSigningFailure
        assert "AccessDenied" in err.message
        assert err.code == "upstream_failure"


def test_guess_content_type():
    assert guess_content_type("images/cat.png") == "image/png"
    assert guess_content_type("README") == "application/octet-stream"


# ── S3Signer over moto ───────────────────────────────────────────────────────


class TestS3Signer:
    def test_get_uses_head_content_type(self, s3_client):
        signer = S3Signer(s3_client)
        before = time.time()
        signed = run_async(signer.sign(BUCKET, "docs/notes.txt", "get", 600))
        assert signed.url.startswith("https://")
        assert "docs/notes.txt" in signed.url
        assert signed.content_type == "text/plain"
        assert signed.issued_at >= before
        assert signed.expires_at == pytest.approx(signed.issued_at + 600, abs=5)

    def test_missing_object(self, s3_client):
        signer = S3Signer(s3_client)
        with pytest.raises(ObjectNotFound):
            run_async(signer.sign(BUCKET, "images/missing.png", "get", 600))

    def test_put_skips_head(self, s3_client):
        signer = S3Signer(s3_client)
        signed = run_async(signer.sign(BUCKET, "uploads/new.bin", "put", 600))
        assert signed.content_type == "application/octet-stream"

    def test_verify_exists_off_falls_back_to_guess(self, s3_client):
        signer = S3Signer(s3_client, verify_exists=False)
        signed = run_async(signer.sign(BUCKET, "images/never-uploaded.jpg", "get", 600))
        assert signed.content_type == "image/jpeg"

    def test_response_header_override_baked_into_url(self, s3_client):
        signer = S3Signer(s3_client)
        signed = run_async(
            signer.sign(
                BUCKET, "docs/report.pdf", "get", 600,
                response_headers={"ResponseContentDisposition": "attachment"},
            )
        )
        assert "response-content-disposition=attachment" in signed.url

    def test_unknown_response_header_rejected(self, s3_client):
        signer = S3Signer(s3_client)
        with pytest.raises(InvalidInput):
            run_async(signer.sign(BUCKET, "docs/report.pdf", "get", 600, response_headers={"Bogus": "1"}))

    def test_response_headers_only_for_get(self, s3_client):
        signer = S3Signer(s3_client)
        with pytest.raises(InvalidInput):
            run_async(
                signer.sign(BUCKET, "a.bin", "put", 600, response_headers={"ResponseContentType": "text/plain"})
            )

    def test_transport_error_is_upstream_failure(self):
        class Unreachable:
            def head_object(self, **kwargs):
                raise EndpointConnectionError(endpoint_url="https://s3.invalid")

        with pytest.raises(UpstreamSigningFailure) as exc_info:
            run_async(S3Signer(Unreachable()).sign(BUCKET, "a.png", "get", 600))
        assert type(exc_info.value) is UpstreamSigningFailure

    def test_throttled_head_is_rate_limited(self):
        class Throttled:
            def head_object(self, **kwargs):
                raise _client_error("SlowDown", 503)

        with pytest.raises(RateLimited):
            run_async(S3Signer(Throttled()).sign(BUCKET, "a.png", "get", 600))
