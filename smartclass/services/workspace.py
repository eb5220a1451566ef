import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, List, Mapping, Optional, Union
from pydantic import BaseModel
from smartclass.crud.academic_client import AcademicClient
from smartclass.schemas.academics_schemas import AcademicPeriod, ClassInstance, UserProfile
from smartclass.schemas.attendance_schemas import (
    AttendanceRecord, AttendanceStatus, ParticipationLevel, ParticipationRecord
)
from smartclass.schemas.grades_schemas import FinalGrade
from smartclass.schemas.ml_model import Prediction, PredictionComparison
from smartclass.services.grade_aggregator import GradeSheet
from smartclass.services.period_gate import PeriodWindowGate, default_gate
from smartclass.services.reconciler import GRADES_PLAN, ConsistencyReconciler, ReconcileOutcome, RefreshPlan
from smartclass.services.status_codec import ATTENDANCE_CODEC, PARTICIPATION_CODEC
from smartclass.services.view_cache import CacheKind, ViewStateCache
from smartclass.utils.auth import can_manage_class, can_view_class, require_manage, require_view
from smartclass.utils.errors import RefetchFailure, WriteFailure

logger = logging.getLogger(__name__)


class NoticeLevel(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notice(BaseModel):
    level: NoticeLevel
    message: str
    dismissible: bool = True
    can_retry_refresh: bool = False


class SaveResult(BaseModel):
    saved: bool
    outcome: Optional[ReconcileOutcome] = None
    notices: List[Notice] = []


class ClassWorkspace:
    """
    State of one class screen: who is looking, which period and date are
    selected, and the cached aggregates behind it.

    close() marks the screen as gone; reconciliation runs still in
    flight then discard their results instead of caching them.
    """

    def __init__(self, reconciler: ConsistencyReconciler, user: Optional[UserProfile],
                 class_data: ClassInstance, gate: Optional[PeriodWindowGate] = None):
        require_view(user, class_data)
        self.reconciler = reconciler
        self.user = user
        self.class_data = class_data
        self.gate = gate or default_gate
        self._active = True
        periods = class_data.periods_detail
        if not periods:
            logger.warning(f"No periods assigned to class {class_data.id}")
        self.selected_period: Optional[AcademicPeriod] = periods[0] if periods else None
        self.selected_date: date = self.gate.clamp_to_period(datetime.now(self.gate.tz), self.selected_period)

    @classmethod
    async def open(cls, client: AcademicClient, cache: ViewStateCache, class_id: int,
                   user: Optional[UserProfile] = None, backoff_seconds: Optional[float] = None):
        """Fetch the profile and class, then check the user may see it"""
        if user is None:
            user = await client.get_user_profile()
        class_data = await client.get_class(class_id)
        return cls(ConsistencyReconciler(client, cache, backoff_seconds), user, class_data)

    @property
    def class_id(self) -> int:
        return self.class_data.id

    @property
    def cache(self) -> ViewStateCache:
        return self.reconciler.cache

    @property
    def period_id(self) -> Optional[int]:
        return self.selected_period.id if self.selected_period else None

    @property
    def can_manage(self) -> bool:
        return can_manage_class(self.user, self.class_data)

    @property
    def can_view(self) -> bool:
        return can_view_class(self.user, self.class_data)

    @property
    def busy(self) -> bool:
        """Save controls stay disabled while this is True"""
        return self.reconciler.in_flight

    def is_active(self) -> bool:
        return self._active

    def close(self):
        self._active = False

    # Selection
    def select_period(self, period_id: int) -> AcademicPeriod:
        period = self.class_data.get_period(period_id)
        if period is None:
            raise ValueError(f"Period {period_id} is not assigned to class {self.class_id}")
        self.selected_period = period
        self.selected_date = self.gate.clamp_to_period(self.selected_date, period)
        self.cache.invalidate(self.class_id)
        return period

    def should_disable_date(self, value) -> bool:
        return not self.gate.is_date_allowed(value, self.selected_period)

    def select_date(self, value) -> date:
        self.selected_date = self.gate.ensure_date_allowed(value, self.selected_period)
        return self.selected_date

    def render_key(self, kind: CacheKind) -> str:
        return self.cache.render_key(self.class_id, kind)

    # Reads
    async def load(self, kind: CacheKind) -> Any:
        entry = await self.reconciler.load(self.class_id, self.period_id, kind, self.is_active)
        return entry.payload if entry is not None else None

    async def grade_sheet(self) -> GradeSheet:
        sheet = GradeSheet(self.period_id)
        sheet.load(await self.load(CacheKind.GRADES) or [])
        return sheet

    async def final_grades(self) -> List[FinalGrade]:
        return [FinalGrade.model_validate(g) for g in await self.load(CacheKind.FINAL_GRADES) or []]

    async def predictions(self) -> List[Prediction]:
        return [Prediction.model_validate(p) for p in await self.load(CacheKind.PREDICTIONS) or []]

    async def prediction_history(self) -> List[PredictionComparison]:
        return [PredictionComparison.model_validate(p) for p in await self.load(CacheKind.PREDICTION_HISTORY) or []]

    async def daily_attendance(self, on_date=None) -> List[AttendanceRecord]:
        day = self.gate.to_local_date(on_date or self.selected_date)
        return [
            AttendanceRecord(
                student_id=str(r.get("student", r.get("student_id"))),
                period_id=self.period_id, date=day, status=ATTENDANCE_CODEC.decode(r.get("status")),
            )
            for r in self._records_on(await self.load(CacheKind.ATTENDANCE), day)
        ]

    async def daily_participation(self, on_date=None) -> List[ParticipationRecord]:
        day = self.gate.to_local_date(on_date or self.selected_date)
        return [
            ParticipationRecord(
                student_id=str(r.get("student", r.get("student_id"))),
                period_id=self.period_id, date=day, level=PARTICIPATION_CODEC.decode(r.get("level")),
            )
            for r in self._records_on(await self.load(CacheKind.PARTICIPATION), day)
        ]

    @staticmethod
    def _records_on(payload, day: date) -> List[Mapping[str, Any]]:
        records = payload or []
        return [r for r in records if r.get("date") in (None, day.isoformat())]

    # Writes
    async def _reconciled(self, label: str, run) -> SaveResult:
        try:
            outcome = await run
        except WriteFailure as e:
            return SaveResult(saved=False, notices=[
                Notice(level=NoticeLevel.ERROR, message=f"Error saving {label}: {e.detail}")
            ])
        except RefetchFailure as e:
            return SaveResult(saved=True, notices=[
                Notice(level=NoticeLevel.SUCCESS, message=f"{label.capitalize()} saved"),
                Notice(
                    level=NoticeLevel.WARNING,
                    message=f"Displayed {', '.join(e.stale)} may be out of date",
                    can_retry_refresh=True,
                ),
            ])
        return SaveResult(saved=True, outcome=outcome, notices=[
            Notice(level=NoticeLevel.SUCCESS, message=f"{label.capitalize()} saved and statistics updated")
        ])

    async def save_grades(self, sheet: GradeSheet) -> SaveResult:
        require_manage(self.user, self.class_data, "manage grades")
        rows = sheet.to_bulk_write(self.class_id, self.class_data.student_ids).grades
        return await self._reconciled(
            "grades", self.reconciler.save_grades(self.class_id, sheet.period_id, rows, self.is_active)
        )

    async def save_attendance(self, statuses: Mapping[Any, Union[AttendanceStatus, str]]) -> SaveResult:
        require_manage(self.user, self.class_data, "manage attendance")
        return await self._reconciled("attendance", self.reconciler.save_attendance(
            self.class_id, self.selected_period, self.selected_date, statuses,
            self.class_data.student_ids, self.is_active,
        ))

    async def save_participation(self, levels: Mapping[Any, Union[ParticipationLevel, str]]) -> SaveResult:
        require_manage(self.user, self.class_data, "manage participation")
        return await self._reconciled("participation", self.reconciler.save_participation(
            self.class_id, self.selected_period, self.selected_date, levels,
            self.class_data.student_ids, self.is_active,
        ))

    async def recalculate_final_grades(self) -> SaveResult:
        require_manage(self.user, self.class_data, "recalculate final grades")
        return await self._reconciled("final grades", self.reconciler.recalculate_final_grades(
            self.class_id, self.period_id, self.is_active
        ))

    async def update_predictions(self, include_retrospective: bool = False) -> SaveResult:
        require_manage(self.user, self.class_data, "update predictions")
        return await self._reconciled("predictions", self.reconciler.update_predictions(
            self.class_id, include_retrospective, self.is_active
        ))

    async def generate_retrospective_predictions(self, period_id: Optional[int] = None) -> SaveResult:
        require_manage(self.user, self.class_data, "generate retrospective predictions")
        return await self._reconciled("retrospective predictions", self.reconciler.generate_retrospective_predictions(
            self.class_id, period_id, self.is_active
        ))

    async def retrain_model(self) -> SaveResult:
        require_manage(self.user, self.class_data, "retrain the model")
        return await self._reconciled("model", self.reconciler.retrain_model(self.class_id, self.is_active))

    async def retry_refresh(self, plan: RefreshPlan = GRADES_PLAN) -> ReconcileOutcome:
        """The manual retry after a stale-data warning"""
        require_view(self.user, self.class_data)
        return await self.reconciler.retry_refresh(self.class_id, self.period_id, plan, self.is_active)
