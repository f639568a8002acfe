from fastapi import FastAPI
from contextlib import asynccontextmanager
import logging
from typing import Optional

import uvicorn

from melanoma_service.core.config import Settings, settings as default_settings
from melanoma_service.core.logging import setup_logging
from melanoma_service.ml.model_loader import ModelBundle, load_models
from melanoma_service.services.inference_service import InferenceService
from melanoma_service.api.errors import register_exception_handlers
from melanoma_service.api.middleware import RequestIdLoggingMiddleware
from melanoma_service.api.routes import router as api_router

logger = logging.getLogger(__name__)


def create_app(
    models: Optional[ModelBundle] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    models: preloaded bundle (tests); loaded from disk at startup when None.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        setup_logging(settings.log_level)

        logger.info(f"Environment: {settings.env}")
        logger.info(f"Using device: {settings.device_torch}")

        bundle = models if models is not None else load_models(settings)

        app.state.models = bundle
        app.state.inference_service = InferenceService(models=bundle, settings=settings)

        logger.info(f"Inference service ready, classes: {list(bundle.class_names)}")
        yield

        # Shutdown: nothing to release, the bundle is dropped with the app

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(RequestIdLoggingMiddleware)
    register_exception_handlers(app)
    app.include_router(api_router)
    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "melanoma_service.main:app",
        host=default_settings.host,
        port=default_settings.port,
    )


if __name__ == "__main__":
    run()
