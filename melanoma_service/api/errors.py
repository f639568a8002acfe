import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from melanoma_service.api.schemas import ErrorResponse
from melanoma_service.core.errors import PipelineError

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        detail = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        logger.warning(f"validation_error on {request.url.path}: {detail}")
        body = ErrorResponse(error="validation_error", stage="request", detail=detail)
        return JSONResponse(status_code=422, content=body.model_dump())

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        if exc.status_code >= 500:
            logger.error(
                f"{exc.kind} at stage {exc.stage} on {request.url.path}: {exc.detail}",
                exc_info=exc,
            )
        else:
            logger.warning(f"{exc.kind} at stage {exc.stage} on {request.url.path}: {exc.detail}")

        body = ErrorResponse(**exc.to_dict())
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}", exc_info=exc)
        body = ErrorResponse(error="internal_error", stage="unknown", detail="Internal server error")
        return JSONResponse(status_code=500, content=body.model_dump())
