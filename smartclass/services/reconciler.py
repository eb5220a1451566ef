import asyncio
import logging
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union
from pydantic import BaseModel
from smartclass.config import settings
from smartclass.crud.academic_client import AcademicClient
from smartclass.schemas.academics_schemas import AcademicPeriod
from smartclass.schemas.attendance_schemas import (
    AttendanceBulkCreate, AttendanceBulkRecord, AttendanceStatus,
    ParticipationBulkCreate, ParticipationBulkRecord, ParticipationLevel
)
from smartclass.schemas.grades_schemas import BulkGradeWrite, GradeInput
from smartclass.services.grade_aggregator import COMPONENTS, validate_component, validate_components
from smartclass.services.period_gate import PeriodWindowGate, default_gate
from smartclass.services.status_codec import ATTENDANCE_CODEC, PARTICIPATION_CODEC, StatusCodec
from smartclass.services.view_cache import CacheEntry, CacheKind, ViewStateCache
from smartclass.utils.errors import (
    AcademicClientError, BatchValidationError, GateViolation, RefetchFailure, WriteFailure
)

logger = logging.getLogger(__name__)


class ReconcileState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    WRITING = "writing"
    INVALIDATING = "invalidating"
    AWAITING_RECOMPUTE = "awaiting_recompute"
    REFETCHING = "refetching"
    SETTLED = "settled"
    FAILED = "failed"


class RefreshPlan(BaseModel):
    """Kinds re-fetched after a write, stage by stage"""
    records: List[CacheKind] = []
    stats: List[CacheKind] = []
    aggregates: List[CacheKind] = []

    def stages(self) -> List[List[CacheKind]]:
        return [self.records, self.stats, self.aggregates]

    def kinds(self) -> List[CacheKind]:
        return self.records + self.stats + self.aggregates


GRADES_PLAN = RefreshPlan(
    records=[CacheKind.GRADES],
    stats=[CacheKind.GRADE_STATS],
    aggregates=[CacheKind.FINAL_GRADES, CacheKind.PREDICTIONS],
)
FINAL_GRADES_PLAN = RefreshPlan(
    records=[CacheKind.GRADES],
    stats=[CacheKind.GRADE_STATS],
    aggregates=[CacheKind.FINAL_GRADES],
)
ATTENDANCE_PLAN = RefreshPlan(
    records=[CacheKind.ATTENDANCE],
    stats=[CacheKind.ATTENDANCE_STATS],
    aggregates=[CacheKind.PREDICTIONS],
)
PARTICIPATION_PLAN = RefreshPlan(
    records=[CacheKind.PARTICIPATION],
    stats=[CacheKind.PARTICIPATION_STATS],
    aggregates=[CacheKind.PREDICTIONS],
)
PREDICTIONS_PLAN = RefreshPlan(
    stats=[CacheKind.PREDICTION_STATS],
    aggregates=[CacheKind.PREDICTIONS, CacheKind.PREDICTION_HISTORY, CacheKind.COMPARISON_STATS],
)


class ReconcileOutcome(BaseModel):
    class_id: int
    period_id: Optional[int] = None
    state: ReconcileState
    acknowledgement: Any = None
    versions: Dict[CacheKind, int] = {}
    transitions: List[ReconcileState] = []
    discarded: bool = False


ActiveCheck = Callable[[], bool]


def _always_active() -> bool:
    return True


class ConsistencyReconciler:
    """
    Orchestrates bulk writes against a backend whose derived aggregates
    are recomputed asynchronously after the write is acknowledged.

    validate -> write -> invalidate (class, *) -> fixed backoff ->
    re-fetch records, stats, aggregates -> publish versions.

    Runs are not queued or merged; callers must not start a second run
    for the same view while one is in flight.
    """

    def __init__(self, client: AcademicClient, cache: ViewStateCache,
                 backoff_seconds: Optional[float] = None, gate: Optional[PeriodWindowGate] = None):
        self.client = client
        self.cache = cache
        self.backoff_seconds = settings.RECOMPUTE_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        self.gate = gate or default_gate
        self.state = ReconcileState.IDLE
        self._fetchers: Dict[CacheKind, Callable[[int, Optional[int]], Awaitable[Any]]] = {
            CacheKind.GRADES: client.get_grades_by_class_and_period,
            CacheKind.GRADE_STATS: client.get_grade_stats,
            CacheKind.FINAL_GRADES: lambda cid, pid: client.get_final_grades_by_class(cid),
            CacheKind.PREDICTIONS: lambda cid, pid: client.get_predictions_by_class(cid),
            CacheKind.PREDICTION_STATS: lambda cid, pid: client.get_prediction_stats(cid),
            CacheKind.PREDICTION_HISTORY: lambda cid, pid: client.get_prediction_history_by_class(cid),
            CacheKind.COMPARISON_STATS: lambda cid, pid: client.get_comparison_stats(cid),
            CacheKind.ATTENDANCE: client.get_attendances_by_class_and_period,
            CacheKind.ATTENDANCE_STATS: client.get_attendance_stats,
            CacheKind.PARTICIPATION: client.get_participations_by_class_and_period,
            CacheKind.PARTICIPATION_STATS: client.get_participation_stats,
        }

    @property
    def in_flight(self) -> bool:
        return self.state not in (ReconcileState.IDLE, ReconcileState.SETTLED, ReconcileState.FAILED)

    def _transition(self, class_id: int, new_state: ReconcileState, transitions: List[ReconcileState]):
        logger.info(f"Reconcile class {class_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        transitions.append(new_state)

    async def fetch(self, kind: CacheKind, class_id: int, period_id: Optional[int] = None) -> Any:
        return await self._fetchers[CacheKind(kind)](class_id, period_id)

    async def load(self, class_id: int, period_id: Optional[int], kind: CacheKind,
                   is_active: ActiveCheck = _always_active) -> Optional[CacheEntry]:
        """Read-through: serve the cache, or fetch, cache and publish"""
        entry = self.cache.get(class_id, period_id, kind)
        if entry is not None:
            return entry
        payload = await self.fetch(kind, class_id, period_id)
        if not is_active():
            logger.warning(f"Discarding {CacheKind(kind).value} for class {class_id}, view is gone")
            return None
        version = self.cache.put(class_id, period_id, kind, payload)
        self.cache.publish(class_id, {CacheKind(kind): version})
        return self.cache.get(class_id, period_id, kind)

    async def _run(self, class_id: int, period_id: Optional[int], plan: RefreshPlan,
                   prepare: Callable[[], Any], write: Optional[Callable[[Any], Awaitable[Any]]],
                   is_active: ActiveCheck = _always_active, wait: bool = True) -> ReconcileOutcome:
        if self.in_flight:
            logger.warning(f"Reconcile for class {class_id} started while another run is {self.state.value}")
        transitions: List[ReconcileState] = []
        try:
            return await self._stages(class_id, period_id, plan, prepare, write, is_active, wait, transitions)
        finally:
            # Cancellation or an unexpected error must not leave the run in flight
            if self.in_flight:
                logger.error(f"Reconcile for class {class_id} aborted while {self.state.value}")
                self._transition(class_id, ReconcileState.FAILED, transitions)

    async def _stages(self, class_id: int, period_id: Optional[int], plan: RefreshPlan,
                      prepare: Callable[[], Any], write: Optional[Callable[[Any], Awaitable[Any]]],
                      is_active: ActiveCheck, wait: bool, transitions: List[ReconcileState]) -> ReconcileOutcome:
        self._transition(class_id, ReconcileState.VALIDATING, transitions)
        try:
            payload = prepare()
        except BatchValidationError:
            self._transition(class_id, ReconcileState.IDLE, transitions)
            raise

        acknowledgement = None
        if write is not None:
            self._transition(class_id, ReconcileState.WRITING, transitions)
            try:
                acknowledgement = await write(payload)
            except AcademicClientError as e:
                self._transition(class_id, ReconcileState.FAILED, transitions)
                logger.error(f"Bulk write for class {class_id} failed: {e.detail}")
                raise WriteFailure(e) from e

        self._transition(class_id, ReconcileState.INVALIDATING, transitions)
        self.cache.invalidate(class_id)

        if wait:
            self._transition(class_id, ReconcileState.AWAITING_RECOMPUTE, transitions)
            await asyncio.sleep(self.backoff_seconds)

        self._transition(class_id, ReconcileState.REFETCHING, transitions)
        versions: Dict[CacheKind, int] = {}
        for stage in plan.stages():
            for kind in stage:
                try:
                    data = await self.fetch(kind, class_id, period_id)
                except AcademicClientError as e:
                    self._transition(class_id, ReconcileState.FAILED, transitions)
                    stale = [k.value for k in plan.kinds() if k not in versions]
                    logger.error(f"Refreshing {kind.value} for class {class_id} failed: {e.detail}")
                    # Keep what was refreshed
                    self.cache.publish(class_id, versions)
                    raise RefetchFailure(e, acknowledgement, [k.value for k in versions], stale) from e
                if not is_active():
                    logger.warning(f"Discarding refreshed data for class {class_id}, view is gone")
                    # Entries stored before the view went away stay cached and are announced
                    self.cache.publish(class_id, versions)
                    self._transition(class_id, ReconcileState.SETTLED, transitions)
                    return ReconcileOutcome(
                        class_id=class_id, period_id=period_id, state=self.state,
                        acknowledgement=acknowledgement, versions=versions,
                        transitions=transitions, discarded=True,
                    )
                versions[kind] = self.cache.put(class_id, period_id, kind, data)

        self._transition(class_id, ReconcileState.SETTLED, transitions)
        self.cache.publish(class_id, versions)
        return ReconcileOutcome(
            class_id=class_id, period_id=period_id, state=self.state,
            acknowledgement=acknowledgement, versions=versions, transitions=transitions,
        )

    # Grades
    async def save_grades(self, class_id: int, period_id: int,
                          grades: Iterable[Union[GradeInput, Mapping[str, Any]]],
                          is_active: ActiveCheck = _always_active) -> ReconcileOutcome:
        """Bulk save one period's grades and refresh class-wide aggregates"""

        def prepare() -> BulkGradeWrite:
            errors: List[Exception] = []
            rows = []
            for grade in grades:
                row = grade.model_dump() if isinstance(grade, BaseModel) else dict(grade)
                student_id = row.get("student_id")
                if student_id is None:
                    errors.append(ValueError(f"Grade row without student_id: {row}"))
                    continue
                row_errors = validate_components(row, student_id)
                if row_errors:
                    errors.extend(row_errors)
                    continue
                rows.append(GradeInput(
                    student_id=str(student_id),
                    **{field: validate_component(field, row.get(field)).value for field in COMPONENTS},
                ))
            if errors:
                raise BatchValidationError(errors)
            return BulkGradeWrite(class_instance=class_id, period=period_id, grades=rows)

        return await self._run(
            class_id, period_id, GRADES_PLAN, prepare, self.client.bulk_write_grades, is_active
        )

    async def recalculate_final_grades(self, class_id: int, period_id: Optional[int] = None,
                                       is_active: ActiveCheck = _always_active) -> ReconcileOutcome:
        return await self._run(
            class_id, period_id, FINAL_GRADES_PLAN, lambda: None,
            lambda _: self.client.recalculate_final_grades(class_id), is_active,
        )

    # Attendance and participation
    def _prepare_daily(self, codec: StatusCodec, class_id: int, period: AcademicPeriod, on_date,
                       values: Mapping[Any, Any], student_ids: Optional[Iterable], default):
        errors: List[Exception] = []
        try:
            day = self.gate.ensure_date_allowed(on_date, period)
        except GateViolation as e:
            errors.append(e)
            day = None
        ids = [str(sid) for sid in student_ids] if student_ids is not None else []
        merged: Dict[str, Any] = {sid: default for sid in ids}
        merged.update({str(sid): value for sid, value in values.items()})
        records = []
        for student_id, value in merged.items():
            try:
                records.append((student_id, codec.encode(value)))
            except ValueError:
                errors.append(ValueError(f"Student {student_id}: '{value}' is not a valid {codec.name} value"))
        if errors:
            raise BatchValidationError(errors)
        return day, records

    async def save_attendance(self, class_id: int, period: AcademicPeriod, on_date: Union[date, str],
                              statuses: Mapping[Any, Union[AttendanceStatus, str]],
                              student_ids: Optional[Iterable] = None,
                              is_active: ActiveCheck = _always_active) -> ReconcileOutcome:
        """Bulk save one day's attendance; enrolled students without a status count as present"""

        def prepare() -> AttendanceBulkCreate:
            day, records = self._prepare_daily(
                ATTENDANCE_CODEC, class_id, period, on_date, statuses, student_ids, AttendanceStatus.PRESENT
            )
            return AttendanceBulkCreate(
                class_instance=class_id, period=period.id, date=day,
                attendances=[AttendanceBulkRecord(student_id=sid, status=code) for sid, code in records],
            )

        return await self._run(
            class_id, period.id, ATTENDANCE_PLAN, prepare, self.client.bulk_write_attendance, is_active
        )

    async def save_participation(self, class_id: int, period: AcademicPeriod, on_date: Union[date, str],
                                 levels: Mapping[Any, Union[ParticipationLevel, str]],
                                 student_ids: Optional[Iterable] = None,
                                 is_active: ActiveCheck = _always_active) -> ReconcileOutcome:
        """Bulk save one day's participation; enrolled students without a level count as medium"""

        def prepare() -> ParticipationBulkCreate:
            day, records = self._prepare_daily(
                PARTICIPATION_CODEC, class_id, period, on_date, levels, student_ids, ParticipationLevel.MEDIUM
            )
            return ParticipationBulkCreate(
                class_instance=class_id, period=period.id, date=day,
                participations=[ParticipationBulkRecord(student_id=sid, level=code) for sid, code in records],
            )

        return await self._run(
            class_id, period.id, PARTICIPATION_PLAN, prepare, self.client.bulk_write_participation, is_active
        )

    # ML predictions
    async def update_predictions(self, class_id: int, include_retrospective: bool = False,
                                 is_active: ActiveCheck = _always_active) -> ReconcileOutcome:
        return await self._run(
            class_id, None, PREDICTIONS_PLAN, lambda: None,
            lambda _: self.client.update_class_predictions(class_id, include_retrospective), is_active,
        )

    async def generate_retrospective_predictions(self, class_id: int, period_id: Optional[int] = None,
                                                 is_active: ActiveCheck = _always_active) -> ReconcileOutcome:
        return await self._run(
            class_id, period_id, PREDICTIONS_PLAN, lambda: None,
            lambda _: self.client.generate_retrospective_predictions(class_id, period_id), is_active,
        )

    async def retrain_model(self, class_id: int, is_active: ActiveCheck = _always_active) -> ReconcileOutcome:
        return await self._run(
            class_id, None, PREDICTIONS_PLAN, lambda: None,
            lambda _: self.client.retrain_model(class_id), is_active,
        )

    async def retry_refresh(self, class_id: int, period_id: Optional[int], plan: RefreshPlan = GRADES_PLAN,
                            is_active: ActiveCheck = _always_active) -> ReconcileOutcome:
        """Manual refresh after a RefetchFailure; no write and no backoff"""
        return await self._run(class_id, period_id, plan, lambda: None, None, is_active, wait=False)
