from typing import Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI
import structlog
import uvicorn

from companion.application.api.route.conversation import router as conversation_router
from companion.application.bootstrap import CompanionContainer, build_container
from companion.infrastructure.config.settings import get_settings
from companion.infrastructure.observability.logging import setup_logging, metrics

logger = structlog.get_logger(__name__)


def create_app(container: Optional[CompanionContainer] = None) -> FastAPI:
    """FastAPI app exposing the conversation intake"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "container", None) is None:
            app.state.container = build_container()
        await app.state.container.start()
        try:
            yield
        finally:
            await app.state.container.stop()

    app = FastAPI(title="Companion Core", lifespan=lifespan)
    app.state.container = container
    app.include_router(conversation_router)

    @app.get("/health")
    async def health():
        current = app.state.container
        return {
            "status": "ok",
            "open_conversations": len(current.gate) if current else 0,
            "metrics": metrics.get_metrics_summary()
        }

    return app


def run():
    settings = get_settings()
    setup_logging(settings.logging.level, settings.logging.format, settings.logging.service_name)
    logger.info("Starting API server", host=settings.api_host, port=settings.api_port)
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()
