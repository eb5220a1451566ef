from typing import Any, List, Optional


class SmartClassError(Exception):
    """Base class for every error raised by the client"""


class RangeError(SmartClassError, ValueError):
    """A grade component outside its allowed bound"""

    def __init__(self, field: str, value: Any, max_value: Optional[float], message: Optional[str] = None,
                 student_id: Any = None):
        self.field = field
        self.value = value
        self.max_value = max_value
        self.student_id = student_id
        if message is None:
            message = f"{field.upper()}: value must be between 0 and {max_value:g}"
        if student_id is not None:
            message = f"Student {student_id}: {message}"
        super().__init__(message)


class GateViolation(SmartClassError, ValueError):
    """A selected date outside the academic period window"""

    def __init__(self, value: Any, period_id: Optional[int], start_date=None, end_date=None):
        self.value = value
        self.period_id = period_id
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(
            f"Date {value} is outside period {period_id} ({start_date} to {end_date})"
        )


class BatchValidationError(SmartClassError, ValueError):
    """One or more records of a bulk save failed local validation"""

    def __init__(self, errors: List[Exception]):
        self.errors = errors
        super().__init__(f"{len(errors)} invalid value(s) in batch: " + "; ".join(str(e) for e in errors))


class AcademicClientError(SmartClassError):
    """Network or server rejection from the academic service"""

    def __init__(self, detail: str, status_code: Optional[int] = None):
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"[{status_code}] {detail}" if status_code else detail)


class WriteFailure(SmartClassError):
    """The bulk write was not applied"""

    def __init__(self, cause: AcademicClientError):
        self.cause = cause
        self.detail = cause.detail
        self.status_code = cause.status_code
        super().__init__(f"Write failed: {cause.detail}")


class RefetchFailure(SmartClassError):
    """The write succeeded but refreshing derived aggregates failed"""

    def __init__(self, cause: Exception, acknowledgement: Any, refreshed: List[str], stale: List[str]):
        self.cause = cause
        self.acknowledgement = acknowledgement
        self.refreshed = refreshed
        self.stale = stale
        super().__init__(
            f"Saved, but refreshing {', '.join(stale)} failed: {cause}. Displayed data may be stale"
        )


class PermissionDenied(SmartClassError):
    """The current user may not perform the requested operation"""
