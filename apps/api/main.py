from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from apps.api.api.routes import events, metrics, notifications, ping, tickets, users
from apps.api.core.config import Settings, get_settings
from apps.api.core.logging import configure_logging, init_tracer, shutdown_tracer
from apps.api.helpdesk import BootstrapPolicy, EmailAlertSender, HelpdeskService, TicketInsightsClient
from apps.api.metrics import metrics_registry
from apps.api.services.changes import ChangeFeed
from apps.api.services.postgres import PostgresChangeListener, to_asyncpg_dsn
from apps.api.services.sql_store import SQLStore


def build_service(settings: Settings, store, registry=metrics_registry) -> HelpdeskService:
    """Wire the help-desk engine to ``store`` using the configured policies."""

    policy = BootstrapPolicy.from_values(settings.bootstrap_admin_emails, settings.bootstrap_admin_prefixes)
    email = None
    if settings.email_api_key:
        email = EmailAlertSender(
            api_key=settings.email_api_key,
            api_url=settings.email_api_url,
            sender=settings.email_sender,
            support_inbox=settings.support_inbox,
        )
    insights = None
    if settings.insights_api_key:
        insights = TicketInsightsClient(
            api_key=settings.insights_api_key,
            api_url=settings.insights_api_url,
            model=settings.insights_model,
        )
    return HelpdeskService(store, policy=policy, email=email, insights=insights, registry=registry)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings: Settings = app.state.settings
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.metrics_registry = metrics_registry
    feed = ChangeFeed()
    app.state.change_feed = feed
    app.state.helpdesk_service = None

    db_engine = None
    listener: PostgresChangeListener | None = None
    try:
        db_engine = create_async_engine(settings.database_url, future=True)
        session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
        store = SQLStore(session_factory, engine=db_engine, feed=feed, notify_channel=settings.change_channel)
        await store.ensure_schema()
        if settings.change_channel and db_engine.dialect.name == "postgresql":
            listener = PostgresChangeListener(
                dsn=to_asyncpg_dsn(settings.database_url), channel=settings.change_channel, feed=feed
            )
            await listener.start()
        app.state.helpdesk_service = build_service(settings, store)
        app.state.db_engine = db_engine
        logger.info("Help-desk service ready on %s", db_engine.dialect.name)
    except Exception:  # pragma: no cover - service initialisation best effort
        logger.exception("Help-desk service could not be initialised")
        app.state.helpdesk_service = None
        if listener is not None:
            await listener.close()
            listener = None
        if db_engine is not None:
            await db_engine.dispose()
            db_engine = None
    try:
        yield
    finally:
        if listener is not None:
            await listener.close()
        if db_engine is not None:
            await db_engine.dispose()
        shutdown_tracer(tracer_provider)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.dependency_overrides[get_settings] = lambda: settings
    app.include_router(ping.router)
    app.include_router(users.me_router)
    app.include_router(users.router)
    app.include_router(tickets.router)
    app.include_router(tickets.activity_router)
    app.include_router(notifications.router)
    app.include_router(metrics.router)
    app.include_router(events.router)
    return app


app = create_app()
