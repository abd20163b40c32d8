#!/usr/bin/env python3
"""
Signed-URL API: FastAPI app serving cached S3 presigned URLs.
Entrypoint for uvicorn is signed_urls.api.main:app. Configuration comes from env (see signed_urls.shared).
"""
import logging
import os
import re
import time
from contextlib import asynccontextmanager
from typing import Any

import boto3
from botocore.config import Config
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from signed_urls.api import create_router
from signed_urls.api.issuance import SignedUrlIssuer
from signed_urls.api.logging_config import setup_logging
from signed_urls.api.signing import S3Signer
from signed_urls.api.url_cache import CacheService
from signed_urls.shared import DEFAULT_BUCKET, CacheConfig

setup_logging()

log = logging.getLogger(__name__)

_SECRET_QUERY_RE = re.compile(r"((?:token|signature|x-amz-signature|x-amz-credential)=)[^&\s]+", re.IGNORECASE)


def _request_line_safe(path: str, query: str) -> str:
    """Path + query with token/signature values redacted for the access log."""
    if not query:
        return path
    safe = _SECRET_QUERY_RE.sub(r"\1REDACTED", query)
    return f"{path}?{safe}"


class _AccessLogMiddleware(BaseHTTPMiddleware):
    """Log every /api request with status and duration. No log for GET /api/status when 200."""

    async def dispatch(self, request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        path = request.url.path
        if not path.startswith("/api"):
            return response
        if path == "/api/status" and response.status_code == 200:
            return response  # probe noise
        client = request.client or ("?", "?")
        log.info(
            f'"{request.method} {_request_line_safe(path, request.url.query)}" {response.status_code}',
            extra={
                "duration": time.perf_counter() - start,
                "client": f"{client[0]}:{client[1]}",
                "method": request.method,
                "path": path,
                "status": response.status_code,
            },
        )
        return response


@asynccontextmanager
async def _lifespan(app: FastAPI):
    config = CacheConfig.from_env()
    cache = CacheService(config)
    s3 = boto3.client(
        "s3",
        region_name=os.environ.get("AWS_REGION", "us-east-1"),
        config=Config(signature_version="s3v4"),
    )
    app.state.cache = cache
    app.state.issuer = SignedUrlIssuer(cache, S3Signer(s3))
    await cache.start()
    log.info(
        "Signed URL API started bucket=%s ttl=%ss max_entries=%s redis=%s",
        DEFAULT_BUCKET,
        config.ttl_seconds,
        config.max_entries,
        "configured" if config.redis_url else "none",
    )
    try:
        yield
    finally:
        await cache.close()
        log.info("Signed URL API stopped, cache flushed")


app = FastAPI(title="Signed URL Cache", lifespan=_lifespan)
app.add_middleware(_AccessLogMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(create_router(), prefix="/api")


@app.get("/health")
async def health() -> dict[str, Any]:
    return {"status": "ok"}


@app.get("/api/status")
async def status(request: Request) -> dict[str, Any]:
    """Health probe. Always 200: a missing Redis only degrades the cache. Kicks off a reconnect if Redis is down."""
    cache: CacheService = request.app.state.cache
    return {"status": "ok", "distributed_status": cache.probe()}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Signed URL API starting host=0.0.0.0 port={port}")
    uvicorn.run(
        "signed_urls.api.main:app",
        host="0.0.0.0",
        port=port,
        reload=False,
        access_log=False,
    )
