"""HTTP surface of the plugin API gateway.

Lets plugins running in worker processes reach host capabilities. The HTTP
layer only parses and serializes; every decision is made by
:meth:`PluginAPIGateway.handle`.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from plugkeep import __version__
from plugkeep.protocol import APIRequest, APIResponse, ErrorKind

if TYPE_CHECKING:
    from plugkeep.gateway.gateway import PluginAPIGateway

logger = logging.getLogger(__name__)


class HealthStatus(BaseModel):
    """Health check response."""

    status: str
    version: str
    uptime: int
    active_plugins: list[str]
    capabilities: list[str]


def create_gateway_app(
    gateway: PluginAPIGateway,
    active_plugins: Callable[[], list[str]] | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
) -> FastAPI:
    """Create the FastAPI app for a gateway.

    Args:
        gateway: Gateway that handles every request
        active_plugins: Optional callable listing active plugin names
        lifespan: Optional startup/shutdown context (e.g. starting plugins)

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="plugkeep Plugin API Gateway",
        description="Permission-checked, rate-limited access to host capabilities",
        version=__version__,
        lifespan=lifespan,
    )

    @app.post("/plugin-api")
    async def handle_plugin_request(request: Request) -> JSONResponse:
        body = None
        try:
            body = await request.json()
            api_request = APIRequest.model_validate(body)
        except (ValueError, ValidationError) as e:
            correlation_id = "unknown"
            if isinstance(body, dict):
                correlation_id = str(
                    body.get("correlation_id") or body.get("correlationId") or "unknown"
                )
            response = APIResponse.fail(
                correlation_id,
                ErrorKind.INVALID_REQUEST,
                f"Invalid request format: {e}",
            )
            return JSONResponse(content=response.model_dump(mode="json"), status_code=400)

        response = await gateway.handle(api_request)
        return JSONResponse(content=response.model_dump(mode="json"))

    @app.get("/health")
    async def health_check() -> HealthStatus:
        plugins = active_plugins() if active_plugins else []
        return HealthStatus(
            status="healthy",
            version=__version__,
            uptime=int(time.time() - gateway.start_time),
            active_plugins=sorted(plugins),
            capabilities=sorted(c.value for c in gateway.providers),
        )

    return app
