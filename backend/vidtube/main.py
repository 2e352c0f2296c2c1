import logging
import sys
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from vidtube.api.errors import register_exception_handlers
from vidtube.api.v1 import users

# Ensure app loggers print to stdout so you see them in the terminal
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
logging.getLogger("vidtube").setLevel(logging.DEBUG)
from vidtube.config import settings
from vidtube.db.session import init_db
from vidtube.services.mailer import get_mailer
from vidtube.services.otp import OtpChallengeService, close_otp_store, init_otp_store
from prometheus_client import make_asgi_app

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_otp_sweep():
    """Evict expired OTP challenges and release the temp uploads they hold."""
    service = OtpChallengeService(init_otp_store(), get_mailer())
    try:
        await service.sweep_expired()
    except Exception as e:
        logger.warning("OTP sweep failed: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_jwt_config()
    await init_db()
    init_otp_store()

    scheduler.add_job(
        scheduled_otp_sweep,
        "interval",
        seconds=settings.otp_sweep_interval_seconds,
        id="otp_sweep",
        replace_existing=True,
    )
    scheduler.start()
    yield
    scheduler.shutdown()
    await close_otp_store()


limiter = Limiter(key_func=get_remote_address, default_limits=["200/minute"])

app = FastAPI(
    title="VidTube API",
    description="Video platform backend: accounts, OTP-verified sessions, channels",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_exception_handlers(app)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=500)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if getattr(settings, "enable_hsts", False):
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()] if settings.cors_origins else ["*"]
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(users.router, prefix="/api/v1")

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health")
@limiter.exempt
def health(request: Request):
    return {"status": "ok"}
