from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class UpdatePredictionsRequest(BaseModel):
    class_id: int
    include_retrospective: bool = False

class RetrospectivePredictionsRequest(BaseModel):
    class_id: int
    period_id: Optional[int] = None

class RetrainModelRequest(BaseModel):
    class_id: int

class Prediction(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    student: Optional[int] = None
    predicted_grade: Optional[float] = None
    risk_level: Optional[str] = None
    confidence: Optional[float] = None
    created_at: Optional[datetime] = None

class PredictionComparison(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    student: Optional[int] = None
    predicted_grade: Optional[float] = None
    actual_grade: Optional[float] = None
    difference: Optional[float] = None
    factors: List[str] = []
