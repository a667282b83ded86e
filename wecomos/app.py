"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from wecomos import __version__
from wecomos.api import openapi_callback, webhook
from wecomos.bridge import WeComBridge
from wecomos.config import ConfigProvider

logger = logging.getLogger(__name__)


def create_app(
    bridge: Optional[WeComBridge] = None,
    config: Optional[ConfigProvider] = None,
    start_providers: bool = True,
) -> FastAPI:
    """
    Build the webhook server.

    Args:
        bridge: Bridge to serve (built from ``config`` if omitted)
        config: Configuration provider (``ConfigProvider()`` if omitted)
        start_providers: Start every configured account on startup and stop
            them on shutdown

    Returns:
        FastAPI application with ``app.state.bridge`` set
    """
    if bridge is None:
        bridge = WeComBridge(config or ConfigProvider())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_providers:
            started = await bridge.start_all()
            logger.info(f"WeCom bridge started with {len(started)} account(s)")
        try:
            yield
        finally:
            if start_providers:
                await bridge.stop_all()
                logger.info("WeCom bridge stopped")

    app = FastAPI(
        title="wecomos",
        description="WeCom webhook bridge",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.bridge = bridge
    app.state.max_body_bytes = bridge.config.get().server.max_body_bytes

    app.include_router(openapi_callback.router, tags=["wecom"])
    app.include_router(webhook.router, tags=["wecom"])
    return app
