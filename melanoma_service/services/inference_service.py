import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Type

import torch

from melanoma_service.core.config import Settings, settings as default_settings
from melanoma_service.core.errors import (
    CompositeError,
    DecodeError,
    ExplanationError,
    InferenceError,
    PipelineError,
    PreprocessError,
)
from melanoma_service.ml.compositor import CompositeImage, composite
from melanoma_service.ml.decoding import ImageBuffer, decode_image
from melanoma_service.ml.gradcam import RelevanceMap, compute_gradcam
from melanoma_service.ml.inference import PredictionResult, run_inference, to_prediction
from melanoma_service.ml.model_loader import ModelBundle
from melanoma_service.ml.preprocessing import preprocess_image

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    RECEIVED = "received"
    DECODED = "decoded"
    PREPROCESSED = "preprocessed"
    INFERRED = "inferred"
    EXPLAINED = "explained"
    COMPOSITED = "composited"
    RESPONDED = "responded"
    ERRORED = "errored"


@dataclass
class RequestContext:
    """Everything one request produces. Dropped when the request ends."""

    stage: Stage = Stage.RECEIVED
    buffer: Optional[ImageBuffer] = None
    tensor: Optional[torch.Tensor] = None
    logits: Optional[torch.Tensor] = None
    features: Optional[torch.Tensor] = None
    prediction: Optional[PredictionResult] = None
    relevance: Optional[RelevanceMap] = None
    composite: Optional[CompositeImage] = None
    timings_ms: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineResult:
    prediction: PredictionResult
    composite: CompositeImage
    explanation_degraded: bool


class InferenceService:
    def __init__(
        self,
        models: ModelBundle,
        settings: Optional[Settings] = None,
    ):
        self.models = models
        self.settings = settings or default_settings

    @contextmanager
    def _stage(self, ctx: RequestContext, error_cls: Type[PipelineError], name: str):
        """
        Runs one pipeline step. Any exception that is not already a
        PipelineError is re-raised as error_cls; ctx ends in ERRORED.
        """
        start = time.perf_counter()
        try:
            yield
        except PipelineError:
            ctx.stage = Stage.ERRORED
            raise
        except Exception as e:
            ctx.stage = Stage.ERRORED
            logger.exception(f"Unexpected failure during {name}")
            raise error_cls(f"{name.capitalize()} failed") from e
        finally:
            ctx.timings_ms[name] = (time.perf_counter() - start) * 1000

    def _advance(self, ctx: RequestContext, stage: Stage) -> None:
        logger.debug(f"{ctx.stage.value} -> {stage.value}")
        ctx.stage = stage

    # ---------------------------------------------------------
    # Individual steps
    # ---------------------------------------------------------
    def decode(self, raw: bytes, content_type: Optional[str] = None) -> ImageBuffer:
        return decode_image(
            raw,
            content_type=content_type,
            allowed_content_types=self.settings.allowed_content_types,
            max_bytes=self.settings.max_upload_bytes,
            max_pixels=self.settings.max_image_pixels,
        )

    # ---------------------------------------------------------
    # Full pipeline: decode -> predict -> Grad-CAM -> overlay
    # ---------------------------------------------------------
    def run(self, raw: bytes, content_type: Optional[str] = None) -> PipelineResult:
        ctx = RequestContext()

        with self._stage(ctx, DecodeError, "decode"):
            ctx.buffer = self.decode(raw, content_type)
        self._advance(ctx, Stage.DECODED)

        with self._stage(ctx, PreprocessError, "preprocess"):
            ctx.tensor = preprocess_image(ctx.buffer, self.models.img_size).to(self.models.device)
        self._advance(ctx, Stage.PREPROCESSED)

        with self._stage(ctx, InferenceError, "inference"):
            ctx.logits, ctx.features = run_inference(
                self.models.model, ctx.tensor, self.models.img_size
            )
            ctx.prediction = to_prediction(
                ctx.logits,
                self.models.class_names,
                self.settings.confidence_decimals,
            )
        self._advance(ctx, Stage.INFERRED)

        with self._stage(ctx, ExplanationError, "explanation"):
            ctx.relevance = compute_gradcam(
                self.models.model.head,
                ctx.features,
                ctx.prediction.class_index,
                out_size=ctx.buffer.size,
            )
        self._advance(ctx, Stage.EXPLAINED)

        with self._stage(ctx, CompositeError, "composite"):
            ctx.composite = composite(
                ctx.buffer,
                ctx.relevance,
                alpha=self.settings.alpha_overlay,
                colormap=self.settings.colormap,
                image_format=self.settings.overlay_format,
                quality=self.settings.jpeg_quality,
            )
        self._advance(ctx, Stage.COMPOSITED)

        result = PipelineResult(
            prediction=ctx.prediction,
            composite=ctx.composite,
            explanation_degraded=ctx.relevance.degraded,
        )
        self._advance(ctx, Stage.RESPONDED)

        timings = {k: round(v, 1) for k, v in ctx.timings_ms.items()}
        logger.info(
            f"Predicted {ctx.prediction.label} ({ctx.prediction.confidence}) "
            f"for {ctx.buffer.width}x{ctx.buffer.height} image, timings_ms={timings}"
        )
        return result
