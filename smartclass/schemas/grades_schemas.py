# schemas/grades_schemas.py

from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
from typing import List, Optional, Union


class GradeStatus(str, Enum):
    APPROVED = "approved"
    FAILED = "failed"


class GradeBand(str, Enum):
    EXCELLENT = "excelente"
    GOOD = "bueno"
    REGULAR = "regular"
    INSUFFICIENT = "insuficiente"


class GradeInput(BaseModel):
    """One student's row of a bulk grade write"""
    student_id: str
    ser: float = Field(0, ge=0, le=5)
    saber: float = Field(0, ge=0, le=45)
    hacer: float = Field(0, ge=0, le=40)
    decidir: float = Field(0, ge=0, le=5)
    autoevaluacion: float = Field(0, ge=0, le=5)


class BulkGradeWrite(BaseModel):
    class_instance: int
    period: int
    grades: List[GradeInput]


class GradeComponentSet(BaseModel):
    student_id: str
    period_id: int
    ser: float
    saber: float
    hacer: float
    decidir: float
    autoevaluacion: float
    total: float
    status: GradeStatus


class PeriodGrade(BaseModel):
    model_config = ConfigDict(extra="allow")

    period: Optional[int] = None
    nota_total: Optional[float] = None
    estado: Optional[str] = None


class FinalGrade(BaseModel):
    model_config = ConfigDict(extra="allow")

    student_id: Optional[Union[int, str]] = None
    class_id: Optional[int] = None
    nota_final: Optional[float] = None
    estado_final: Optional[str] = None
    periods_count: Optional[int] = None
    period_grades: List[PeriodGrade] = []


class RecalculateFinalGradesRequest(BaseModel):
    class_id: int
