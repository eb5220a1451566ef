from datetime import date
from enum import Enum
from typing import List
from pydantic import BaseModel


# UI-facing vocabularies
class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"

class ParticipationLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Domain-language codes used on the wire
class AttendanceCode(str, Enum):
    PRESENTE = "presente"
    FALTA = "falta"
    TARDANZA = "tardanza"

class ParticipationCode(str, Enum):
    ALTA = "alta"
    MEDIA = "media"
    BAJA = "baja"


class AttendanceBulkRecord(BaseModel):
    student_id: str
    status: AttendanceCode

class AttendanceBulkCreate(BaseModel):
    class_instance: int
    period: int
    date: date
    attendances: List[AttendanceBulkRecord]

class ParticipationBulkRecord(BaseModel):
    student_id: str
    level: ParticipationCode

class ParticipationBulkCreate(BaseModel):
    class_instance: int
    period: int
    date: date
    participations: List[ParticipationBulkRecord]


class AttendanceRecord(BaseModel):
    student_id: str
    period_id: int
    date: date
    status: AttendanceStatus

class ParticipationRecord(BaseModel):
    student_id: str
    period_id: int
    date: date
    level: ParticipationLevel
