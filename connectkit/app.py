from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from connectkit.api.error_handling import register_exception_handlers
from connectkit.api.routes import router
from connectkit.config import Settings
from connectkit.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


_cleanup_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _cleanup_task
    from connectkit.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.cleanup_interval_seconds > 0:
            _cleanup_task = asyncio.create_task(
                _run_auth_cleanup(runtime.settings.cleanup_interval_seconds)
            )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
            _cleanup_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="ConnectKit Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; no wildcard while credentials are enabled
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation id for structured logs.

    Uses the client's X-Request-ID when present, otherwise a new UUID, and
    echoes it back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry tokens and must never be cached
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report database, token cache and filesystem health plus build info."""
    from connectkit.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    cache_ok = await _run_bounded("redis", runtime.cache.verify_connection)
    checks["redis"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "type": "redis" if runtime.cache.redis_url else "memory",
    }

    fs_path = Path(runtime.settings.shared_fs_root)

    def _fs_check() -> None:
        if not fs_path.exists() or not fs_path.is_dir():
            raise FileNotFoundError(fs_path)
        health_file = fs_path / ".health_check"
        health_file.write_text(datetime.now(timezone.utc).isoformat())
        health_file.read_text()
        health_file.unlink(missing_ok=True)

    fs_ok = await _run_bounded("filesystem", _fs_check)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

    overall_healthy = db_ok and cache_ok and fs_ok
    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _run_auth_cleanup(interval_seconds: int) -> None:
    """Background loop clearing expired reset tokens and elapsed lockouts."""
    from connectkit.service.runtime import get_runtime

    interval = max(interval_seconds, 60)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await get_runtime().auth.cleanup()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("auth_cleanup_loop_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("auth_cleanup_task_cancelled")


def create_app() -> FastAPI:
    return app
