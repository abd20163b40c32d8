import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Body, Query, Request
from fastapi.responses import JSONResponse

from signed_urls.api.errors import SigningError
from signed_urls.api.url_cache import CacheEntry
from signed_urls.shared import DEFAULT_BUCKET, PRESIGNED_EXPIRES

_log = logging.getLogger(__name__)

# Upper bound on paths accepted by one batch request.
MAX_BATCH_PATHS = 500

_STATUS_BY_CODE = {
    "invalid_input": 400,
    "not_found": 404,
    "rate_limited": 429,
}


def entry_to_json(entry: CacheEntry) -> dict:
    return {
        "url": entry.url,
        "path": entry.path,
        "contentType": entry.content_type,
        "expiresAt": datetime.fromtimestamp(entry.expires_at, UTC).isoformat(),
        "fromCache": entry.from_cache,
    }


def _error_response(exc: SigningError) -> JSONResponse:
    return JSONResponse(
        {"error": exc.message, "code": exc.code},
        status_code=_STATUS_BY_CODE.get(exc.code, 502),
    )


def _missing(name: str) -> JSONResponse:
    return JSONResponse({"error": f"Missing required query parameter: {name}"}, status_code=400)


def create_router() -> APIRouter:
    """Create the signed-URL API router. Expects ``app.state.issuer`` (a SignedUrlIssuer)."""
    router = APIRouter(tags=["signed-urls"])

    @router.get("/signed-url")
    async def signed_url(
        request: Request,
        path: str = Query(None),
        operation: str = Query("get"),
        bucket: str = Query(None),
        expires_in: str = Query(None),
    ):
        _log.info(f"signed url {operation=} {bucket=} {path=}")
        if not path:
            return _missing("path")
        expires = PRESIGNED_EXPIRES
        if expires_in not in (None, ""):
            try:
                expires = int(expires_in)
            except ValueError:
                return JSONResponse({"error": "Parameter expires_in must be an integer"}, status_code=400)
        issuer = request.app.state.issuer
        try:
            entry = await issuer.issue(operation, bucket or DEFAULT_BUCKET, path, expires)
        except SigningError as e:
            _log.warning(f"signed url failed {path=} code={e.code}: {e.message}")
            return _error_response(e)
        return entry_to_json(entry)

    @router.post("/signed-urls/batch")
    async def signed_urls_batch(request: Request, body: dict = Body(default=None)):
        data = body or {}
        paths = data.get("paths")
        if not isinstance(paths, list) or not paths:
            return JSONResponse({"error": "Body must contain a non-empty 'paths' list"}, status_code=400)
        if len(paths) > MAX_BATCH_PATHS:
            return JSONResponse(
                {"error": f"At most {MAX_BATCH_PATHS} paths per batch, got {len(paths)}"},
                status_code=400,
            )
        expires_in = data.get("expires_in", PRESIGNED_EXPIRES)
        if isinstance(expires_in, bool) or not isinstance(expires_in, int):
            return JSONResponse({"error": "expires_in must be an integer"}, status_code=400)
        operation = data.get("operation") or "get"
        bucket = data.get("bucket") or DEFAULT_BUCKET
        _log.info(f"signed url batch count={len(paths)} {operation=} {bucket=}")

        issuer = request.app.state.issuer
        results = await issuer.issue_batch(paths, operation=operation, bucket=bucket, expires_in=expires_in)
        out = []
        for r in results:
            if r.ok:
                out.append({"path": r.path, "success": True, **entry_to_json(r.entry)})
            else:
                out.append({"path": r.path, "success": False, "error": r.error, "code": r.code})
        succeeded = sum(1 for r in results if r.ok)
        return {"results": out, "succeeded": succeeded, "failed": len(results) - succeeded}

    @router.delete("/cache")
    async def invalidate_path(request: Request, path: str = Query(None), bucket: str = Query(None)):
        _log.info(f"cache invalidate {path=} {bucket=}")
        if not path:
            return _missing("path")
        issuer = request.app.state.issuer
        try:
            await issuer.invalidate_path(path, bucket or DEFAULT_BUCKET)
        except SigningError as e:
            return _error_response(e)
        return {"status": "ok", "path": path}

    @router.delete("/cache/pattern")
    async def invalidate_pattern(request: Request, pattern: str = Query(None)):
        _log.info(f"cache invalidate by pattern {pattern=}")
        if not pattern:
            return _missing("pattern")
        deleted = await request.app.state.issuer.invalidate_by_pattern(pattern)
        return {"deleted": deleted}

    @router.get("/cache/stats")
    def cache_stats(request: Request):
        return request.app.state.issuer.stats()

    return router
