"""
API gateway - forwards item requests to the backend service.

Backend failures are surfaced as 502 without retrying (single attempt, fail
fast). Outgoing calls are traced through the httpx instrumentation, so the
backend spans join the gateway's trace.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic_settings import BaseSettings, SettingsConfigDict
import uvicorn

from telemetry.logger import ServiceLogger, configure_logging, get_logger
from telemetry.manager import TelemetryContext, bootstrap

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "api-gateway"
ITEMS_PATH = "/api/items"


class GatewaySettings(BaseSettings):
    """Gateway configuration from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    otel_service_name: str = DEFAULT_SERVICE_NAME
    backend_url: str = "http://localhost:3001"
    port: int = 3000
    log_level: str = "INFO"
    access_log: bool = False
    backend_timeout: float = 10.0


class GatewayServer:
    """Gateway exposing /api/items, backed by the backend service."""

    def __init__(
        self,
        telemetry: TelemetryContext,
        backend_url: str = "http://localhost:3001",
        port: int = 3000,
        access_log: bool = False,
        client: Optional[httpx.AsyncClient] = None,
        backend_timeout: float = 10.0,
    ):
        self.telemetry = telemetry
        self.service_name = telemetry.service_name
        self.backend_url = backend_url.rstrip("/")
        self.port = port
        self.access_log = access_log
        self.log: ServiceLogger = get_logger(self.service_name, telemetry)

        self._setup_client_telemetry()
        self.client = client or httpx.AsyncClient(
            base_url=self.backend_url, timeout=backend_timeout
        )

        self.app = FastAPI(title=f"Gateway: {self.service_name}", lifespan=self._lifespan)
        self._setup_routes()
        self._setup_telemetry()

    def _setup_client_telemetry(self):
        """Trace outgoing httpx calls when tracing is active."""
        if self.telemetry.tracer_provider is None:
            return
        try:
            from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

            instrumentor = HTTPXClientInstrumentor()
            if not instrumentor.is_instrumented_by_opentelemetry:
                instrumentor.instrument(tracer_provider=self.telemetry.tracer_provider)
        except Exception as e:
            logger.warning(f"Failed to enable httpx instrumentation: {e}")

    def _setup_telemetry(self):
        """Instrument FastAPI when tracing is active."""
        if self.telemetry.tracer_provider is None:
            return
        try:
            from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

            FastAPIInstrumentor.instrument_app(
                self.app,
                tracer_provider=self.telemetry.tracer_provider,
                meter_provider=self.telemetry.meter_provider,
            )
        except Exception as e:
            logger.warning(f"Failed to enable OpenTelemetry instrumentation: {e}")

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        self.log.info("Listening", {"port": self.port, "backend": self.backend_url})
        yield
        logger.info("Gateway shutdown")
        await self.client.aclose()

    def _setup_routes(self):
        @self.app.get("/health")
        async def health():
            return JSONResponse({"status": "ok", "service": self.service_name})

        @self.app.get(ITEMS_PATH)
        async def list_items():
            self.log.info("Fetching items from backend", {"path": ITEMS_PATH})
            try:
                response = await self.client.get(ITEMS_PATH)
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                self.log.error("Backend request failed", {"path": ITEMS_PATH, "error": str(e)})
                return JSONResponse({"error": str(e)}, status_code=502)

            count = len(data) if isinstance(data, list) else 0
            self.log.info("Items fetched successfully", {"count": count})
            return JSONResponse(data, status_code=response.status_code)

        @self.app.post(ITEMS_PATH)
        async def create_item(request: Request):
            try:
                body = await request.json()
            except ValueError:
                self.log.warn("Malformed request body", {"path": ITEMS_PATH, "method": "POST"})
                return JSONResponse({"error": "request body must be JSON"}, status_code=400)

            name = body.get("name") if isinstance(body, dict) else None
            self.log.info("Creating item", {"item.name": name})
            try:
                response = await self.client.post(ITEMS_PATH, json=body or {})
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                self.log.error(
                    "Backend request failed",
                    {"path": ITEMS_PATH, "method": "POST", "error": str(e)},
                )
                return JSONResponse({"error": str(e)}, status_code=502)

            return JSONResponse(data, status_code=response.status_code)

    def run(self, host: str = "0.0.0.0"):
        logger.info(f"Starting gateway on {host}:{self.port}")
        uvicorn.run(self.app, host=host, port=self.port, access_log=self.access_log)


def create_gateway_server(
    settings: Optional[GatewaySettings] = None,
    telemetry: Optional[TelemetryContext] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> GatewayServer:
    """Create a GatewayServer, bootstrapping telemetry unless one is given."""
    if not settings:
        settings = GatewaySettings()

    if telemetry is None:
        configure_logging(settings.log_level, otel_correlation=True)
        telemetry = bootstrap(settings.otel_service_name)

    return GatewayServer(
        telemetry,
        backend_url=settings.backend_url,
        port=settings.port,
        access_log=settings.access_log,
        client=client,
        backend_timeout=settings.backend_timeout,
    )


def get_app() -> FastAPI:
    """Lazy app factory for uvicorn (use "gateway.server:get_app" with --factory)."""
    return create_gateway_server().app


def main():
    create_gateway_server().run()


if __name__ == "__main__":
    main()
