from contextlib import asynccontextmanager

from fastapi import FastAPI

from supportdesk.api.routes import tickets
from supportdesk.core.config import get_settings
from supportdesk.core.logging import configure_logging, init_tracer, shutdown_tracer
from supportdesk.services.postgres import PostgresPoolManager
from supportdesk.tickets.repository import TicketRepository
from supportdesk.tickets.service import TicketService


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    logger.info("Starting %s in %s environment", settings.app_name, settings.environment)

    pool_manager = PostgresPoolManager(
        dsn=settings.postgres_dsn,
        min_size=settings.postgres_pool_min_size,
        max_size=settings.postgres_pool_max_size,
    )
    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    app.state.pool_manager = pool_manager
    app.state.ticket_service = None
    try:
        pool = await pool_manager.get_pool()
        repository = TicketRepository(pool, lock_timeout_ms=settings.sequence_lock_timeout_ms)
        await repository.ensure_schema()
        app.state.ticket_service = TicketService(repository, policy=settings.sla_policy())
    except Exception:
        # Requests get a 503 from the service dependency until the database is reachable.
        logger.exception("Ticket service initialisation failed")
    try:
        yield
    finally:
        await pool_manager.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(tickets.router)
    return app


app = create_app()
