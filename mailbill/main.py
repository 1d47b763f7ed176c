import base64
import json
import logging
import os
import socket
import threading
import time
import uuid
from urllib.parse import urlparse

from alembic import command as alembic_command
from alembic.config import Config as AlembicConfig
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.responses import JSONResponse

from mailbill.core.config import PROJECT_ROOT, settings
from mailbill.core.logging import configure_logging

configure_logging()

import mailbill.models  # noqa: E402,F401 ensures models are imported for metadata
from mailbill.api.api_v1 import router as api_v1_router  # noqa: E402
from mailbill.api.domains import router as domains_router  # noqa: E402
from mailbill.api.internal import router as internal_router  # noqa: E402
from mailbill.api.mailboxes import router as mailboxes_router  # noqa: E402
from mailbill.api.payments import router as payments_router  # noqa: E402
from mailbill.api.prewarm import router as prewarm_router  # noqa: E402
from mailbill.api.subscriptions import router as subscriptions_router  # noqa: E402
from mailbill.api.wallet import router as wallet_router  # noqa: E402
from mailbill.api.webhook import router as webhook_router  # noqa: E402
from mailbill.core.error_handlers import register_exception_handlers  # noqa: E402

logger = logging.getLogger(__name__)

app = FastAPI(title="Mailbill API")
register_exception_handlers(app)

# Paths that are never rate limited
_RATE_LIMIT_EXEMPT = ("/webhook", "/health")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Carry the inbound X-Request-ID (or a fresh one) through the request and onto the response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-ID", request_id)
        return response


class LogFilterMiddleware(BaseHTTPMiddleware):
    """Suppress access logs for health probes."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path != "/health":
            return await call_next(request)
        access_logger = logging.getLogger("uvicorn.access")
        original_disabled = access_logger.disabled
        access_logger.disabled = True
        try:
            return await call_next(request)
        finally:
            access_logger.disabled = original_disabled


# TODO: Replace in-memory rate limiter with a shared store (e.g., Redis) once the API runs on more than one instance
class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app):
        super().__init__(app)
        self.lock = threading.Lock()
        self.buckets = {}  # key -> {"minute": (window_start_ts, count), "day": (window_start_ts, count)}

    def _key_for(self, request: Request) -> str:
        api_key = (request.headers.get("x-api-key") or "").strip()
        if api_key:
            return f"key:{api_key}"
        # Supabase user id from the unverified JWT is enough for keying
        auth = request.headers.get("authorization") or ""
        if auth.lower().startswith("bearer "):
            token = auth.split(" ", 1)[1].strip()
            parts = token.split(".")
            if len(parts) >= 2:
                try:
                    payload_b64 = parts[1] + "=" * (-len(parts[1]) % 4)
                    payload = json.loads(base64.urlsafe_b64decode(payload_b64).decode("utf-8"))
                    sub = payload.get("sub") or payload.get("user_id")
                    if sub:
                        return f"uid:{sub}"
                except (ValueError, UnicodeDecodeError):
                    pass
            return f"key:{token}"
        ip = request.client.host if request.client else "unknown"
        return f"ip:{ip}"

    async def dispatch(self, request: Request, call_next):
        if request.url.path in _RATE_LIMIT_EXEMPT:
            return await call_next(request)

        key = self._key_for(request)
        now = time.time()
        minute_window = 60.0
        day_window = 86400.0

        # Reads get a higher per-minute allowance
        is_get = request.method.upper() == "GET"
        m_limit = settings.rate_limit_per_min * (5 if is_get else 1)
        d_limit = settings.rate_limit_per_day

        with self.lock:
            data = self.buckets.get(key, {"minute": (now, 0), "day": (now, 0)})
            m_start, m_count = data["minute"]
            d_start, d_count = data["day"]
            if now - m_start >= minute_window:
                m_start, m_count = now, 0
            if now - d_start >= day_window:
                d_start, d_count = now, 0
            if m_count + 1 > m_limit or d_count + 1 > d_limit:
                if m_count + 1 > m_limit:
                    retry_after = int(max(1, minute_window - (now - m_start)))
                else:
                    retry_after = int(max(1, day_window - (now - d_start)))
                request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
                return JSONResponse(
                    {"error": "rate_limit_exceeded", "message": "Rate limit exceeded", "request_id": request_id},
                    status_code=429,
                    headers={
                        "Retry-After": str(retry_after),
                        "X-Request-ID": request_id,
                        "X-RateLimit-Limit-Minute": str(m_limit),
                        "X-RateLimit-Limit-Day": str(d_limit),
                    },
                )
            data["minute"] = (m_start, m_count + 1)
            data["day"] = (d_start, d_count + 1)
            self.buckets[key] = data

        response = await call_next(request)
        response.headers["X-RateLimit-Limit-Minute"] = str(m_limit)
        response.headers["X-RateLimit-Limit-Day"] = str(d_limit)
        return response


# Added last-to-first: CORS ends up outermost so error responses carry its headers
app.add_middleware(RateLimitMiddleware)
app.add_middleware(LogFilterMiddleware)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=500)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook_router)
app.include_router(mailboxes_router)
app.include_router(subscriptions_router)
app.include_router(wallet_router)
app.include_router(domains_router)
app.include_router(payments_router)
app.include_router(prewarm_router)
app.include_router(api_v1_router)
app.include_router(internal_router)


@app.get("/health")
def health():
    return JSONResponse({"ok": True}, headers={"Cache-Control": "public, max-age=60"})


def _check_database_host() -> None:
    """Resolve the database host up front so DNS problems are reported clearly."""
    parsed = urlparse(settings.database_url)
    if not parsed.hostname:
        return
    try:
        socket.getaddrinfo(parsed.hostname, parsed.port or 5432)
    except socket.gaierror as e:
        logger.error(
            "Cannot resolve database host '%s'. Check network/DNS and DATABASE_URL. Error: %s", parsed.hostname, e
        )


@app.on_event("startup")
def on_startup() -> None:
    """Run Alembic migrations with retries."""
    auto_migrate = os.getenv("DB_MIGRATIONS_ON_STARTUP", "1").strip().lower() in ("1", "true", "yes", "on")
    max_retries = int(os.getenv("DB_MIGRATIONS_MAX_RETRIES", "5") or 5)
    retry_delay = float(os.getenv("DB_MIGRATIONS_RETRY_DELAY_SEC", "3") or 3)

    if not auto_migrate:
        logger.info("Skipping database migrations on startup (DB_MIGRATIONS_ON_STARTUP=0)")
        return

    _check_database_host()
    logger.info("Running database migrations")
    alembic_cfg = AlembicConfig(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    alembic_cfg.attributes["configure_logger"] = False

    last_err: Exception | None = None
    for attempt in range(1, max_retries + 1):
        try:
            alembic_command.upgrade(alembic_cfg, "head")
            logger.info("Database migrations applied")
            last_err = None
            break
        except Exception as e:
            last_err = e
            logger.error("Alembic migration attempt %d/%d failed: %s", attempt, max_retries, e)
            if attempt < max_retries:
                time.sleep(retry_delay)
    if last_err:
        logger.error(
            "Alembic migration failed after retries. To skip auto-migrations set DB_MIGRATIONS_ON_STARTUP=0."
        )
        raise last_err

    logger.info("API server ready")
