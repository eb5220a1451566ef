from datetime import date
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class PeriodType(str, Enum):
    BIMESTER = "bimestre"
    TRIMESTER = "trimestre"

    @property
    def max_number(self) -> int:
        return 3 if self is PeriodType.TRIMESTER else 4

    @property
    def label(self) -> str:
        return "Trimestre" if self is PeriodType.TRIMESTER else "Bimestre"


class UserType(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"


class AcademicPeriod(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: int
    period_type: PeriodType
    number: int
    year: int
    start_date: date
    end_date: date

    @field_validator('number')
    def validate_number(cls, v):
        if v < 1:
            raise ValueError('Period number must be at least 1')
        return v

    @model_validator(mode='after')
    def validate_window(self):
        if self.number > self.period_type.max_number:
            raise ValueError(
                f'Number cannot be greater than {self.period_type.max_number} for {self.period_type.value}s'
            )
        if self.start_date >= self.end_date:
            raise ValueError('start_date must be before end_date')
        return self

    @property
    def display_name(self) -> str:
        return f"{self.period_type.label} {self.number}"


class ProfileRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int


class StudentRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class UserProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    username: str
    user_type: UserType
    teacher_profile: Optional[ProfileRef] = None
    student_profile: Optional[ProfileRef] = None


class ClassInstance(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: Optional[str] = None
    teacher: Optional[int] = None
    students: List[int] = []
    students_detail: List[StudentRef] = []
    periods_detail: List[AcademicPeriod] = []

    @property
    def student_ids(self) -> List[int]:
        """Enrolled students, detail list first"""
        if self.students_detail:
            return [s.id for s in self.students_detail]
        return list(self.students)

    def get_period(self, period_id: Optional[int]) -> Optional[AcademicPeriod]:
        for period in self.periods_detail:
            if period.id == period_id:
                return period
        return None
