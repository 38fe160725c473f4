"""
Marketplace web application

Run with:
    uvicorn --factory deskmarket.webui.app:create_app
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from deskmarket import __version__
from deskmarket.config import MarketplaceSettings, load_settings
from deskmarket.core.marketplace.service import MarketplaceService
from deskmarket.webui.api import marketplace
from deskmarket.webui.api.error_envelope import register_error_handlers

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[MarketplaceSettings] = None,
    service: Optional[MarketplaceService] = None,
) -> FastAPI:
    """
    Build the FastAPI application

    Args:
        settings: Settings to use (default: load_settings())
        service: Prebuilt service, e.g. one with a mocked downloader

    Returns:
        FastAPI app whose lifespan starts and stops the marketplace service
    """
    if service is None:
        service = MarketplaceService(settings or load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.shutdown()

    app = FastAPI(
        title="deskmarket",
        description="Web desktop marketplace: app installation service",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.marketplace = service

    register_error_handlers(app)
    app.include_router(marketplace.router)

    @app.get("/api/health", tags=["health"])
    async def health():
        return {
            "ok": True,
            "version": __version__,
            "runningJobs": len(service.coordinator.running_sessions),
        }

    logger.info(f"Marketplace app created (dir: {service.settings.marketplace_dir})")
    return app
