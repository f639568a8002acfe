from pydantic import BaseModel

class Prediction(BaseModel):
    result: str
    confidence: str

class PredictResponse(BaseModel):
    prediction: Prediction
    superimposed_image: str

class ErrorResponse(BaseModel):
    error: str
    stage: str
    detail: str

class HealthResponse(BaseModel):
    status: str
