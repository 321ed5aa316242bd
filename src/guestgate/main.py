"""Guestgate application entrypoint."""

import base64
import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from guestgate.auth.codes import VerificationCodeManager
from guestgate.auth.orchestrator import AuthorizationOrchestrator
from guestgate.auth.rate_limiter import RateLimiter
from guestgate.config import Settings, load_config, settings
from guestgate.controller.base import BaseController
from guestgate.database import init_db
from guestgate.exceptions import GuestgateError, RateLimitExceeded
from guestgate.notify.notifier import NotificationDispatcher, Notifier, create_notifier
from guestgate.scheduler.runner import ReconciliationScheduler

logging.basicConfig(level=settings.log_level.upper())
logger = logging.getLogger(__name__)

# Paths that must stay reachable without admin credentials
PUBLIC_PATHS = ("/health", "/api/guest/", "/api/cron")


def _create_controller(cfg: Settings) -> BaseController | None:
    """Factory: instantiate the configured network controller."""
    mode = cfg.controller_mode
    if mode == "unifi":
        from guestgate.controller.unifi import UnifiController

        if not cfg.unifi_url or not cfg.unifi_username or not cfg.unifi_password:
            logger.warning("UniFi mode selected but credentials not configured")
            return None
        return UnifiController(
            url=cfg.unifi_url,
            username=cfg.unifi_username,
            password=cfg.unifi_password,
            site=cfg.unifi_site,
            verify_ssl=cfg.unifi_verify_ssl,
            timeout=cfg.controller_timeout,
        )
    if mode == "mock":
        from guestgate.controller.mock import MockController

        return MockController(demo=True)
    if mode == "none":
        return None
    logger.warning("Unknown controller mode '%s', skipping", mode)
    return None


def build_services(
    app: FastAPI,
    cfg: Settings,
    controller: BaseController | None,
    notifier: Notifier | None = None,
) -> None:
    """Wire the authorization services onto ``app.state``."""
    notifier = notifier or create_notifier(cfg)
    dispatcher = NotificationDispatcher()
    rate_limiter = RateLimiter(cfg.rate_limit_configs())

    app.state.settings = cfg
    app.state.controller = controller
    app.state.notifier = notifier
    app.state.dispatcher = dispatcher
    app.state.rate_limiter = rate_limiter
    app.state.code_manager = VerificationCodeManager(
        rate_limiter=rate_limiter,
        notifier=notifier,
        dispatcher=dispatcher,
        code_ttl=timedelta(minutes=cfg.code_ttl_minutes),
        max_attempts=cfg.code_max_attempts,
        resend_cooldown=timedelta(seconds=cfg.resend_cooldown_seconds),
        max_resends=cfg.max_resends,
        allow_disposable_emails=cfg.allow_disposable_emails,
    )
    app.state.orchestrator = AuthorizationOrchestrator(
        controller,
        allow_offline_auth=cfg.allow_offline_auth,
        grant_duration=timedelta(days=cfg.guest_auth_days),
    )
    app.state.scheduler = ReconciliationScheduler.from_settings(cfg, controller, notifier)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    # Import models to register them with SQLModel before init_db()
    import guestgate.registry.models  # noqa: F401

    init_db()
    logger.info("Database initialized")

    cfg = load_config()
    controller = _create_controller(cfg)
    if controller is None:
        logger.info("No network controller configured")
    else:
        logger.info("Network controller: %s", cfg.controller_mode)
    if cfg.allow_offline_auth:
        logger.warning("Offline authorization enabled: grants may be recorded without network access")

    build_services(app, cfg, controller)

    scheduler: ReconciliationScheduler = app.state.scheduler
    if cfg.scheduler_enabled:
        await scheduler.start()

    yield

    await scheduler.stop()
    await app.state.dispatcher.drain()
    if controller is not None:
        await controller.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Guestgate",
    description="Email-verified guest WiFi authorization",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(GuestgateError)
async def guestgate_error_handler(request: Request, exc: GuestgateError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.error, request.url.path, exc.message)
    headers = {}
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """HTTP Basic Authentication for the admin API.

    Guest endpoints, the job trigger (which checks its own secret) and
    /health stay public.
    """

    def __init__(self, app, username: str, password: str):
        super().__init__(app)
        self.username = username
        self.password = password

    async def dispatch(self, request, call_next):
        path = request.url.path
        if path == "/health" or any(path.startswith(p) for p in PUBLIC_PATHS):
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Basic "):
            return self._unauthorized_response()

        try:
            decoded = base64.b64decode(auth_header[6:]).decode("utf-8")
            provided_username, provided_password = decoded.split(":", 1)
        except (ValueError, UnicodeDecodeError):
            return self._unauthorized_response()

        # Timing-safe comparison
        username_match = secrets.compare_digest(provided_username, self.username)
        password_match = secrets.compare_digest(provided_password, self.password)

        if not (username_match and password_match):
            return self._unauthorized_response()

        return await call_next(request)

    def _unauthorized_response(self) -> Response:
        return Response(
            content="Unauthorized",
            status_code=401,
            headers={"WWW-Authenticate": 'Basic realm="Guestgate"'},
        )


# Conditionally add BasicAuth if password is configured
if settings.auth_password:
    app.add_middleware(
        BasicAuthMiddleware, username=settings.auth_username, password=settings.auth_password
    )
    logger.info("HTTP Basic Auth enabled for admin API")

# Outermost, so auth rejections carry the headers too
app.add_middleware(SecurityHeadersMiddleware)


# Register routers
from guestgate.api.routes import router as api_router  # noqa: E402

app.include_router(api_router)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def main() -> None:
    import uvicorn

    logger.info("Starting Guestgate on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
