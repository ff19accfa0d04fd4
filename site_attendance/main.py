import os
from typing import Callable, Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import inspect
from sqlalchemy.orm import Session

from .config import settings
from .db import Base, SessionLocal
from .logging import setup_logging, RequestIdMiddleware
from .routes.attendance import router as attendance_router
from .routes.worker_attendance import router as worker_attendance_router
from .services.alert_scheduler import AlertScheduler
from .services.notifications import AlertDispatcher, DatabaseNotificationService, NotificationService


logger = structlog.get_logger(__name__)


def create_app(
    session_factory: Optional[Callable[[], Session]] = None,
    notification_service: Optional[NotificationService] = None,
) -> FastAPI:
    setup_logging()
    session_factory = session_factory or SessionLocal
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Alerting collaborators, one per process
    dispatcher = AlertDispatcher(notification_service or DatabaseNotificationService(session_factory))
    app.state.alert_dispatcher = dispatcher
    app.state.alert_scheduler = AlertScheduler(session_factory, dispatcher)

    # Routers
    app.include_router(attendance_router)
    app.include_router(worker_attendance_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok", "scheduler": app.state.alert_scheduler.status()}

    @app.on_event("startup")
    def _startup():
        logger.info("startup", app=settings.app_name, environment=settings.environment)
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            db = session_factory()
            try:
                bind = db.get_bind()
                existing_tables = set(inspect(bind).get_table_names())
                missing = set(Base.metadata.tables.keys()) - existing_tables
                if missing:
                    logger.info("creating_tables", tables=sorted(missing))
                    Base.metadata.create_all(bind=bind)
            finally:
                db.close()
        if settings.alert_scheduler_enabled:
            app.state.alert_scheduler.start()

    @app.on_event("shutdown")
    def _shutdown():
        if app.state.alert_scheduler.is_running:
            app.state.alert_scheduler.stop()
        app.state.alert_dispatcher.shutdown()

    return app


app = create_app()
