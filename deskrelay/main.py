from contextlib import asynccontextmanager

from fastapi import FastAPI

from deskrelay.api.routes import ratings, share_requests, tickets
from deskrelay.core.config import get_settings
from deskrelay.core.logging import configure_logging, init_tracer, shutdown_tracer
from deskrelay.runtime import build_memory_runtime, build_postgres_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = logger
    app.state.tracer_provider = tracer_provider
    if settings.postgres_dsn:
        runtime = await build_postgres_runtime(settings)
    else:
        logger.warning("No postgres_dsn configured; using in-process stores")
        runtime = build_memory_runtime(settings)
    app.state.runtime = runtime
    try:
        yield
    finally:
        app.state.runtime = None
        await runtime.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(tickets.router)
    app.include_router(share_requests.router)
    app.include_router(ratings.router)
    return app


app = create_app()
