"""
Backend service - in-memory item store.

FastAPI server with a health probe and list/create endpoints for items.
Telemetry is bootstrapped before the app is built so auto-instrumentation
picks up the configured providers.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic_settings import BaseSettings, SettingsConfigDict
import uvicorn

from telemetry.logger import ServiceLogger, configure_logging, get_logger
from telemetry.manager import TelemetryContext, bootstrap

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "backend"


class BackendSettings(BaseSettings):
    """Backend configuration from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    otel_service_name: str = DEFAULT_SERVICE_NAME
    port: int = 3001
    log_level: str = "INFO"
    access_log: bool = False


class ItemStore:
    """Ordered in-memory list of items with sequential ids."""

    def __init__(self):
        self._items: List[Dict[str, Any]] = []

    def add(self, name: str) -> Dict[str, Any]:
        item = {"id": len(self._items) + 1, "name": name}
        self._items.append(item)
        return item

    def list(self) -> List[Dict[str, Any]]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)


class BackendServer:
    """Backend exposing /api/items over an in-memory ItemStore."""

    def __init__(
        self,
        telemetry: TelemetryContext,
        port: int = 3001,
        access_log: bool = False,
        store: Optional[ItemStore] = None,
    ):
        self.telemetry = telemetry
        self.service_name = telemetry.service_name
        self.port = port
        self.access_log = access_log
        self.store = store or ItemStore()
        self.log: ServiceLogger = get_logger(self.service_name, telemetry)

        self.app = FastAPI(title=f"Backend: {self.service_name}", lifespan=self._lifespan)
        self._setup_routes()
        self._setup_telemetry()

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
        self.log.info("Listening", {"port": self.port})
        yield
        logger.info("Backend shutdown")

    def _setup_routes(self):
        @self.app.get("/health")
        async def health():
            return JSONResponse({"status": "ok", "service": self.service_name})

        @self.app.get("/api/items")
        async def list_items():
            self.log.info("Returning items", {"count": len(self.store)})
            return JSONResponse(self.store.list())

        @self.app.post("/api/items")
        async def create_item(request: Request):
            try:
                body = await request.json()
            except ValueError:
                body = None

            name = body.get("name") if isinstance(body, dict) else None
            if not name or not isinstance(name, str):
                self.log.warn("Invalid item creation request", {"reason": "name is required"})
                return JSONResponse({"error": "name is required"}, status_code=400)

            item = self.store.add(name)
            self.log.info("Item created", {"id": item["id"], "item.name": item["name"]})
            return JSONResponse(item, status_code=201)

    def run(self, host: str = "0.0.0.0"):
        logger.info(f"Starting backend on {host}:{self.port}")
        uvicorn.run(self.app, host=host, port=self.port, access_log=self.access_log)


def create_backend_server(
    settings: Optional[BackendSettings] = None,
    telemetry: Optional[TelemetryContext] = None,
) -> BackendServer:
    """Create a BackendServer, bootstrapping telemetry unless one is given."""
    if not settings:
        settings = BackendSettings()

    if telemetry is None:
        configure_logging(settings.log_level, otel_correlation=True)
        telemetry = bootstrap(settings.otel_service_name)

    return BackendServer(telemetry, port=settings.port, access_log=settings.access_log)


def get_app() -> FastAPI:
    """Lazy app factory for uvicorn (use "backend.server:get_app" with --factory)."""
    return create_backend_server().app


def main():
    create_backend_server().run()


if __name__ == "__main__":
    main()
