"""
Base service class for the dashboard authentication broker.
"""

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
from typing import Dict, Optional
import time

from shared.config import ServiceConfig, get_config
from shared.errors import BrokerError, ValidationError
from shared.logging import configure_logging, get_logger
from shared.metrics import get_metrics_collector
from shared.observability import ObservabilityManager, build_health_payload


REQUEST_ID_HEADER = "X-Request-ID"


def _with_cookies(request: Request, response: Response) -> Response:
    """Flush any cookie mutations queued on the request onto ``response``."""
    jar = getattr(request.state, "cookie_jar", None)
    if jar is not None:
        jar.apply(response)
    return response


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.port = port
        self.config = config or get_config(service_name, port)

        configure_logging(service_name, self.config.log_level, json_logs=self.config.env != "local")
        self.logger = get_logger(f"{service_name}.service")
        self.metrics = get_metrics_collector(service_name)
        self.observability = ObservabilityManager(service_name, self.metrics)
        self._start_time = time.time()

        if self.config.enable_tracing:
            from shared.tracing import configure_tracing
            configure_tracing(
                service_name,
                self.config.otel_exporter,
                self.config.enable_console_tracing,
                environment=self.config.env,
            )

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()
        self._setup_error_handlers()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            self._start_time = time.time()
            await self.on_startup()
            self.logger.info("Service started", service=self.service_name, port=self.port)
            try:
                yield
            finally:
                await self.on_shutdown()
                self.logger.info("Service stopped", service=self.service_name)

        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description="Dashboard authentication broker",
            version="1.0.0",
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url=None,
            lifespan=lifespan,
        )

    async def on_startup(self):
        """Startup hook. Override in subclasses."""

    async def on_shutdown(self):
        """Shutdown hook. Override in subclasses."""

    def _setup_middleware(self):
        """Set up middleware."""

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=self.config.env != "local",
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def add_request_context(request: Request, call_next):
            start_time = time.time()
            request_id = self.observability.trace_request(request.headers.get(REQUEST_ID_HEADER))

            try:
                response = await call_next(request)
            finally:
                self.observability.clear_request_context()

            response.headers[REQUEST_ID_HEADER] = request_id
            self.observability.log_request(
                method=request.method,
                endpoint=request.url.path,
                status_code=response.status_code,
                duration=time.time() - start_time,
                request_id=request_id,
            )
            return response

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            dependencies = await self._check_dependencies()
            self.metrics.record_health_check("ok")
            return build_health_payload(self.service_name, self._start_time, dependencies)

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(content=self.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    def _setup_error_handlers(self):
        """Render every error in the ``{statusCode, statusMessage, message}`` shape."""

        @self.app.exception_handler(BrokerError)
        async def broker_error_handler(request: Request, exc: BrokerError):
            log = self.logger.warning if exc.status_code < 500 else self.logger.error
            log(
                "Request failed",
                error_code=exc.code,
                status_code=exc.status_code,
                path=request.url.path,
                details=exc.details,
            )
            self.metrics.record_error(exc.code)
            response = JSONResponse(status_code=exc.status_code, content=exc.to_response())
            return _with_cookies(request, response)

        @self.app.exception_handler(RequestValidationError)
        async def request_validation_handler(request: Request, exc: RequestValidationError):
            self.logger.warning("Request validation failed", path=request.url.path, errors=len(exc.errors()))
            error = ValidationError()
            return _with_cookies(request, JSONResponse(status_code=400, content=error.to_response()))

        @self.app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(request: Request, exc: StarletteHTTPException):
            message = exc.detail if isinstance(exc.detail, str) else "Request failed"
            return JSONResponse(
                status_code=exc.status_code,
                content={
                    "statusCode": exc.status_code,
                    "statusMessage": message,
                    "message": message,
                },
                headers=getattr(exc, "headers", None),
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            self.observability.log_error(type(exc).__name__, "Unhandled exception", path=request.url.path)
            self.logger.exception("Unhandled exception")
            response = JSONResponse(
                status_code=500,
                content={
                    "statusCode": 500,
                    "statusMessage": "Internal server error",
                    "message": "Internal server error",
                },
            )
            return _with_cookies(request, response)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
