# main.py
from contextlib import asynccontextmanager
from typing import Callable, Optional
from datetime import datetime

import uvicorn
from fastapi import FastAPI, Request, status

from auth import auth_router, users_router, IdentityProvider
from concurrency import KeyedLock
from config import Settings, get_settings
from database import init_db, make_engine, make_session_factory, utcnow
from errors import error_response, install_error_handlers
from events import EventBus
from logs import configure_logging, get_logger
from notifier import Notifier, notifier_from_settings
from ratelimit import TOO_MANY_REQUESTS, FixedWindowLimiter
from router import router
from scheduler import RecurrenceScheduler, make_timer
from storage import LocalBlobStore
from tokens import TokenService

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    engine=None,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = utcnow,
    identity_provider: Optional[IdentityProvider] = None,
    start_timers: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, json=settings.log_json)
    if settings.uses_default_secret:
        logger.warning("default_jwt_secret_in_use", environment=settings.app_environment)

    engine = engine if engine is not None else make_engine(settings.database_url)
    init_db(engine)
    session_factory = make_session_factory(engine)

    bus = EventBus()
    locks = KeyedLock()
    scheduler = RecurrenceScheduler(
        session_factory,
        notifier=notifier or notifier_from_settings(settings),
        locks=locks,
        clock=clock,
        timer=make_timer() if start_timers else None,
        notification_timeout=settings.notification_timeout_seconds,
    )
    scheduler.bind(bus)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Overdue occurrences from before a restart fire here
        scheduler.start()
        yield
        scheduler.shutdown()

    app = FastAPI(title="Expense Tracker API", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.bus = bus
    app.state.locks = locks
    app.state.scheduler = scheduler
    app.state.blobs = LocalBlobStore(settings.upload_dir)
    app.state.identity_provider = identity_provider
    app.state.tokens = TokenService(
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        expire_minutes=settings.access_token_expire_minutes,
    )

    install_error_handlers(app)

    if settings.rate_limit_requests:
        limiter = FixedWindowLimiter(
            settings.rate_limit_requests, settings.rate_limit_window_seconds
        )
        app.state.limiter = limiter

        @app.middleware("http")
        async def limit_requests(request: Request, call_next):
            client = request.client.host if request.client else "unknown"
            if not limiter.hit(client):
                logger.warning("rate_limited", client=client, path=request.url.path)
                return error_response(
                    status.HTTP_429_TOO_MANY_REQUESTS, TOO_MANY_REQUESTS
                )
            return await call_next(request)

    app.include_router(router, prefix="/api", tags=["expenses"])
    app.include_router(auth_router, prefix="/auth", tags=["authentication"])
    app.include_router(users_router, prefix="/users", tags=["users"])

    @app.get("/")
    def home():
        return {"message": "Welcome to the Expense Tracker API"}

    return app


if __name__ == "__main__":
    uvicorn.run(create_app(), host="127.0.0.1", port=8000)
