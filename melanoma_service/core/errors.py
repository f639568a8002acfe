class PipelineError(Exception):
    """
    Base class for everything that can fail while handling one request.

    Each subclass names the pipeline stage it belongs to and the HTTP
    status the API answers with.
    """

    kind = "internal_error"
    stage = "unknown"
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"error": self.kind, "stage": self.stage, "detail": self.detail}


class DecodeError(PipelineError):
    kind = "decode_error"
    stage = "decode"
    status_code = 400


class UnsupportedMediaTypeError(DecodeError):
    kind = "unsupported_media_type"
    status_code = 415


class PayloadTooLargeError(DecodeError):
    kind = "payload_too_large"
    status_code = 413


class PreprocessError(PipelineError):
    kind = "preprocess_error"
    stage = "preprocess"
    status_code = 422


class InferenceError(PipelineError):
    kind = "inference_error"
    stage = "inference"


class ExplanationError(PipelineError):
    kind = "explanation_error"
    stage = "explanation"


class CompositeError(PipelineError):
    kind = "composite_error"
    stage = "composite"
