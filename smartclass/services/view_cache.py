import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class CacheKind(str, Enum):
    GRADES = "grades"
    GRADE_STATS = "grade_stats"
    FINAL_GRADES = "final_grades"
    PREDICTIONS = "predictions"
    PREDICTION_STATS = "prediction_stats"
    PREDICTION_HISTORY = "prediction_history"
    COMPARISON_STATS = "comparison_stats"
    ATTENDANCE = "attendance"
    ATTENDANCE_STATS = "attendance_stats"
    PARTICIPATION = "participation"
    PARTICIPATION_STATS = "participation_stats"

    @property
    def class_wide(self) -> bool:
        return self in CLASS_WIDE_KINDS


CLASS_WIDE_KINDS = frozenset({
    CacheKind.FINAL_GRADES,
    CacheKind.PREDICTIONS,
    CacheKind.PREDICTION_STATS,
    CacheKind.PREDICTION_HISTORY,
    CacheKind.COMPARISON_STATS,
})


class CacheEntry(BaseModel):
    class_id: int
    period_id: Optional[int] = None
    kind: CacheKind
    payload: Any = None
    version: Optional[int] = None


Subscriber = Callable[[int, CacheKind, int], None]


class ViewStateCache:
    """
    Fetched aggregates keyed by (class, period, kind).

    Each (class, kind) pair owns a version counter that only grows. It
    survives invalidation, so a repopulated entry always carries a
    version no consumer has seen before. Subscribers are told about new
    versions only through publish().
    """

    def __init__(self):
        self._entries: Dict[Tuple[int, Optional[int], CacheKind], CacheEntry] = {}
        self._versions: Dict[Tuple[int, CacheKind], int] = {}
        self._subscribers: List[Subscriber] = []

    @staticmethod
    def _period_key(kind: CacheKind, period_id: Optional[int]) -> Optional[int]:
        return None if CacheKind(kind).class_wide else period_id

    def get(self, class_id: int, period_id: Optional[int], kind: CacheKind) -> Optional[CacheEntry]:
        kind = CacheKind(kind)
        return self._entries.get((class_id, self._period_key(kind, period_id), kind))

    def put(self, class_id: int, period_id: Optional[int], kind: CacheKind, payload: Any) -> int:
        kind = CacheKind(kind)
        version = self._versions.get((class_id, kind), 0) + 1
        self._versions[(class_id, kind)] = version
        period_id = self._period_key(kind, period_id)
        self._entries[(class_id, period_id, kind)] = CacheEntry(
            class_id=class_id, period_id=period_id, kind=kind, payload=payload, version=version
        )
        logger.debug(f"Cached {kind.value} for class {class_id} period {period_id} at v{version}")
        return version

    def invalidate(self, class_id: int, kind: Optional[CacheKind] = None) -> List[CacheKind]:
        """Drop entries of a class across all periods, for one kind or all of them"""
        kinds = set(CacheKind) if kind is None else {CacheKind(kind)}
        dropped = [key for key in self._entries if key[0] == class_id and key[2] in kinds]
        for key in dropped:
            del self._entries[key]
        cleared = sorted({key[2] for key in dropped}, key=lambda k: k.value)
        if cleared:
            logger.info(f"Invalidated {[k.value for k in cleared]} for class {class_id}")
        return cleared

    def version(self, class_id: int, kind: CacheKind) -> int:
        """Latest version handed out for (class, kind), 0 if never cached"""
        return self._versions.get((class_id, CacheKind(kind)), 0)

    def versions(self, class_id: int) -> Dict[CacheKind, int]:
        return {kind: v for (cid, kind), v in self._versions.items() if cid == class_id}

    def render_key(self, class_id: int, kind: CacheKind) -> str:
        """Key a consumer renders against; a new key means a full re-render"""
        kind = CacheKind(kind)
        return f"{kind.value}-{class_id}-{self.version(class_id, kind)}"

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def publish(self, class_id: int, versions: Dict[CacheKind, int]):
        for kind, version in versions.items():
            for callback in list(self._subscribers):
                callback(class_id, kind, version)
