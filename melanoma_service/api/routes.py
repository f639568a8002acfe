from fastapi import APIRouter, File, UploadFile, Request
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from melanoma_service.api.schemas import ErrorResponse, HealthResponse, Prediction, PredictResponse
from melanoma_service.services.inference_service import PipelineResult

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Malformed or undecodable upload"},
    413: {"model": ErrorResponse, "description": "Upload too large"},
    415: {"model": ErrorResponse, "description": "Unsupported image type"},
    422: {"model": ErrorResponse, "description": "Degenerate image or invalid request"},
    500: {"model": ErrorResponse, "description": "Inference, explanation or compositing failure"},
}


async def read_upload(file: UploadFile, limit: int) -> bytes:
    """Reads at most limit + 1 bytes, enough for the decoder to detect an oversized upload."""
    return await file.read(limit + 1)


async def _run_pipeline(request: Request, file: UploadFile) -> PipelineResult:
    service = request.app.state.inference_service
    raw = await read_upload(file, service.settings.max_upload_bytes)
    # Model forward/backward is CPU bound, keep it off the event loop
    return await run_in_threadpool(service.run, raw, file.content_type)


def _explanation_headers(result: PipelineResult) -> dict:
    return {"X-Explanation-Degraded": "true" if result.explanation_degraded else "false"}


@router.get("/health", response_model=HealthResponse)
def health():
    return {"status": "ok"}


@router.post("/predict", response_model=PredictResponse, responses=ERROR_RESPONSES)
async def predict(
    request: Request,
    response: Response,
    file: UploadFile = File(...),
):
    result = await _run_pipeline(request, file)
    for key, value in _explanation_headers(result).items():
        response.headers[key] = value

    return PredictResponse(
        prediction=Prediction(
            result=result.prediction.label,
            confidence=result.prediction.confidence,
        ),
        superimposed_image=result.composite.to_base64(),
    )


@router.post(
    "/predict/image",
    response_class=Response,
    responses={200: {"content": {"image/jpeg": {}, "image/png": {}}}, **ERROR_RESPONSES},
)
async def predict_image(
    request: Request,
    file: UploadFile = File(...),
):
    """
    Returns the superimposed image as raw bytes.
    Prediction metadata goes in headers.
    """
    result = await _run_pipeline(request, file)

    headers = {
        "X-Predicted-Class": result.prediction.label,
        "X-Confidence": result.prediction.confidence,
        **_explanation_headers(result),
    }
    return Response(
        content=result.composite.data,
        media_type=result.composite.media_type,
        headers=headers,
    )
