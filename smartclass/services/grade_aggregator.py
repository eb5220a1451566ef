import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional
from pydantic import BaseModel
from smartclass.schemas.grades_schemas import (
    BulkGradeWrite, GradeBand, GradeComponentSet, GradeInput, GradeStatus
)
from smartclass.utils.errors import RangeError

logger = logging.getLogger(__name__)

COMPONENT_MAXIMA: Dict[str, float] = {
    "ser": 5,
    "saber": 45,
    "hacer": 40,
    "decidir": 5,
    "autoevaluacion": 5,
}
COMPONENTS = tuple(COMPONENT_MAXIMA)

APPROVAL_THRESHOLD = 51


class ValidationResult(BaseModel):
    field: str
    value: Optional[float] = None
    max_value: Optional[float] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> float:
        if self.error is not None:
            raise RangeError(self.field, self.value, self.max_value, self.error)
        return self.value


def _parse(value: Any) -> float:
    # Blank input reads as 0
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise TypeError("boolean is not a score")
    return float(value)


def validate_component(field: str, value: Any) -> ValidationResult:
    """Check one component value against its bound"""
    max_value = COMPONENT_MAXIMA.get(field)
    if max_value is None:
        return ValidationResult(field=field, error=f"Unknown grade component '{field}'")
    try:
        number = _parse(value)
    except (TypeError, ValueError):
        return ValidationResult(
            field=field, max_value=max_value,
            error=f"{field.upper()}: '{value}' is not a number between 0 and {max_value:g}",
        )
    if number != number or number < 0 or number > max_value:
        return ValidationResult(
            field=field, value=number, max_value=max_value,
            error=f"{field.upper()}: value must be between 0 and {max_value:g}",
        )
    return ValidationResult(field=field, value=number, max_value=max_value)


def compute_total(components: Mapping[str, Any]) -> float:
    """Plain sum of the five components, missing ones count as 0"""
    return sum(float(components.get(field) or 0) for field in COMPONENTS)


def compute_status(total: float) -> GradeStatus:
    return GradeStatus.APPROVED if total >= APPROVAL_THRESHOLD else GradeStatus.FAILED


def grade_band(total: float) -> GradeBand:
    if total >= 90:
        return GradeBand.EXCELLENT
    if total >= 75:
        return GradeBand.GOOD
    if total >= APPROVAL_THRESHOLD:
        return GradeBand.REGULAR
    return GradeBand.INSUFFICIENT


def validate_components(components: Mapping[str, Any], student_id=None) -> List[RangeError]:
    """Every component error of one student's row"""
    errors = []
    for field in COMPONENTS:
        result = validate_component(field, components.get(field))
        if not result.ok:
            errors.append(RangeError(field, components.get(field), result.max_value, result.error, student_id))
    return errors


def build_component_set(student_id, period_id: int, components: Mapping[str, Any]) -> GradeComponentSet:
    values = {field: validate_component(field, components.get(field)).raise_for_error() for field in COMPONENTS}
    total = compute_total(values)
    return GradeComponentSet(
        student_id=str(student_id),
        period_id=period_id,
        total=total,
        status=compute_status(total),
        **values,
    )


class GradeSheet:
    """
    Editable component scores of one class and period.

    Rejected edits raise RangeError and leave the stored values alone.
    """

    def __init__(self, period_id: int):
        self.period_id = period_id
        self._rows: Dict[str, Dict[str, float]] = {}

    def load(self, records: Iterable[Mapping[str, Any]]):
        """Seed from the grades-by-period payload, skipping bad rows"""
        self._rows = {}
        for record in records:
            student_id = record.get("student", record.get("student_id"))
            if student_id is None:
                continue
            row = {}
            for field in COMPONENTS:
                result = validate_component(field, record.get(field))
                if result.ok:
                    row[field] = result.value
                else:
                    logger.warning(f"Ignoring stored {field} for student {student_id}: {result.error}")
            self._rows[str(student_id)] = row

    def set_component(self, student_id, field: str, value: Any) -> float:
        number = validate_component(field, value).raise_for_error()
        self._rows.setdefault(str(student_id), {})[field] = number
        return number

    def get(self, student_id) -> Dict[str, float]:
        row = self._rows.get(str(student_id), {})
        return {field: row.get(field, 0.0) for field in COMPONENTS}

    def total(self, student_id) -> float:
        return compute_total(self.get(student_id))

    def status(self, student_id) -> GradeStatus:
        return compute_status(self.total(student_id))

    def component_set(self, student_id) -> GradeComponentSet:
        return build_component_set(student_id, self.period_id, self.get(student_id))

    def to_bulk_write(self, class_id: int, student_ids: Iterable) -> BulkGradeWrite:
        """One row per enrolled student, missing components sent as 0"""
        return BulkGradeWrite(
            class_instance=int(class_id),
            period=int(self.period_id),
            grades=[GradeInput(student_id=str(sid), **self.get(sid)) for sid in student_ids],
        )
