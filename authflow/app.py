from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from authflow.api.error_handling import register_exception_handlers
from authflow.api.routes import router
from authflow.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from authflow.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        close = getattr(runtime.codes, "close", None)
        if close is not None:
            await close()
        if hasattr(runtime.store, "close"):
            runtime.store.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="Authflow", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/auth/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


async def _run_bounded(name: str, check: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(
            asyncio.to_thread(check), timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
        return True
    except Exception as exc:
        logger.warning("health_check_failed", dependency=name, error=str(exc))
        return False


def _ping_database(store) -> Callable[[], Any]:
    def _check() -> None:
        with store._connect() as conn:
            conn.execute("SELECT 1")

    return _check


@app.get("/healthz")
async def health():
    from authflow.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True

    if hasattr(runtime.store, "_connect"):
        db_ok = await _run_bounded("database", _ping_database(runtime.store))
        checks["database"] = {"status": "ok" if db_ok else "error"}
        healthy = healthy and db_ok
    else:
        checks["database"] = {"status": "ok", "backend": "memory"}

    verify = getattr(runtime.codes, "verify_connection", None)
    if verify is not None:
        redis_ok = await _run_bounded("redis", verify)
        checks["redis"] = {"status": "ok" if redis_ok else "error"}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "disabled"}

    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
