"""
Chat Fanout - FastAPI Application.

Notification fan-out service: receives message-created triggers and
delivers activity entries, pushes and emails to the right recipients.

Architecture Layer: Infrastructure
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI
import structlog

from .config import FanoutServiceConfig, get_config
from .domain.orchestrator import FanoutOrchestrator, create_fanout_orchestrator
from .infrastructure.repositories import (
    InMemoryActivityFeedStore, InMemoryChatStore, InMemoryEmailAuditLog,
    InMemoryIdentityProvider, InMemoryProfileStore, InMemorySettingsStore,
)
from .observability import configure_logging

logger = structlog.get_logger(__name__)

_orchestrator: FanoutOrchestrator | None = None


def get_orchestrator() -> FanoutOrchestrator:
    """Get the global orchestrator instance."""
    if _orchestrator is None:
        raise RuntimeError("Fanout orchestrator not initialized")
    return _orchestrator


def set_orchestrator(orchestrator: FanoutOrchestrator | None) -> None:
    global _orchestrator
    _orchestrator = orchestrator


def _create_local_orchestrator(config: FanoutServiceConfig) -> FanoutOrchestrator:
    """Orchestrator over in-memory stores, for local runs without a chat backend."""
    logger.warning("fanout_using_in_memory_stores")
    return create_fanout_orchestrator(
        config,
        chat_store=InMemoryChatStore(),
        settings_store=InMemorySettingsStore(),
        activity_store=InMemoryActivityFeedStore(),
        profile_store=InMemoryProfileStore(),
        identity_provider=InMemoryIdentityProvider(),
        email_audit_log=InMemoryEmailAuditLog(),
    )


def create_app(config: FanoutServiceConfig | None = None,
               orchestrator: FanoutOrchestrator | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(config.service)
        logger.info("fanout_service_starting", service=config.service.name,
                    env=config.service.env.value, email_provider=config.email_provider())
        set_orchestrator(orchestrator or _create_local_orchestrator(config))
        logger.info("fanout_service_ready")
        yield
        await get_orchestrator().close()
        set_orchestrator(None)
        logger.info("fanout_service_shutdown")

    app = FastAPI(
        title="Chat Fanout Service",
        description="Notification fan-out for channel, thread and direct messages",
        version=config.service.version,
        lifespan=lifespan,
        docs_url="/docs" if not config.is_production() else None,
        redoc_url="/redoc" if not config.is_production() else None,
    )

    from .api import router as fanout_router
    app.include_router(fanout_router)

    @app.get("/", tags=["health"])
    async def root() -> dict[str, str]:
        """Service information endpoint."""
        return {
            "service": config.service.name,
            "version": config.service.version,
            "status": "running",
            "environment": config.service.env.value,
        }

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_config()
    uvicorn.run(
        "chat_fanout.main:create_app",
        factory=True,
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.env.value == "development",
        log_level=settings.service.log_level.lower(),
    )
