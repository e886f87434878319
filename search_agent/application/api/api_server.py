from typing import Callable, Optional
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from search_agent import __version__
from search_agent.application.api.dependencies import ServiceContainer, build_services
from search_agent.application.api.route.chat import router as chat_router
from search_agent.domain.errors import ConfigurationError, SearchAgentError
from search_agent.infrastructure.config.settings import Settings, load_settings
from search_agent.infrastructure.observability.logging import metrics, setup_logging

logger = structlog.get_logger(__name__)

SettingsLoader = Callable[[], Settings]


def create_app(
    services: Optional[ServiceContainer] = None,
    settings_loader: SettingsLoader = load_settings
) -> FastAPI:
    """Build the HTTP application

    With no ``services`` the container is built from the environment at
    startup. A configuration problem does not stop the process: every request
    then answers with the list of missing settings until it is fixed.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.services is None:
            try:
                settings = settings_loader()
                setup_logging(settings.log_level, settings.log_format, settings.service_name)
                app.state.services = build_services(settings)
            except ConfigurationError as e:
                logger.error("Service configuration incomplete", missing=e.missing, error=e.message)

        logger.info("Search agent server started", version=__version__)
        yield

        if app.state.services is not None:
            await app.state.services.aclose()
        logger.info("Search agent server shutdown")

    app = FastAPI(title="Search Agent", version=__version__, lifespan=lifespan)
    app.state.services = services
    app.state.settings_loader = settings_loader

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SearchAgentError)
    async def search_agent_error_handler(request: Request, exc: SearchAgentError):
        if exc.http_status >= 500:
            logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
        else:
            logger.info("Request rejected", path=request.url.path, code=exc.code, status=exc.http_status)
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": {"code": "validation_error", "message": "Invalid request", "details": details}}
        )

    @app.get("/health")
    async def health_check():
        current = app.state.services
        return {
            "status": "healthy" if current is not None else "degraded",
            "service": "search-agent",
            "version": __version__,
            "active_streams": current.stream_manager.active_count if current is not None else 0,
            "metrics": metrics.get_metrics_summary(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    app.include_router(chat_router)
    return app


def main():
    """Console entry point"""

    try:
        settings = load_settings()
    except ConfigurationError as e:
        setup_logging()
        logger.error("Cannot start search agent", missing=e.missing, error=e.message)
        raise SystemExit(1)

    setup_logging(settings.log_level, settings.log_format, settings.service_name)
    uvicorn.run(create_app(settings_loader=lambda: settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
