import logging
from enum import Enum
from typing import Dict, Generic, Type, TypeVar, Union

from smartclass.schemas.attendance_schemas import (
    AttendanceCode, AttendanceStatus, ParticipationCode, ParticipationLevel
)

logger = logging.getLogger(__name__)

U = TypeVar("U", bound=Enum)
D = TypeVar("D", bound=Enum)


class StatusCodec(Generic[U, D]):
    """
    Bidirectional translation between a UI enumeration and the
    domain-language codes the academic service stores.

    decode() never raises: values outside the table (older schema
    revisions, typos in historical rows) are logged as a DecodeFallback
    and resolved to the table's documented default.
    """

    def __init__(self, name: str, ui_enum: Type[U], domain_enum: Type[D],
                 table: Dict[U, D], default: U):
        self.name = name
        self.ui_enum = ui_enum
        self.domain_enum = domain_enum
        self.default = default
        self._check_table(table)
        self._encode = dict(table)
        self._decode = {code: ui for ui, code in table.items()}

    def _check_table(self, table: Dict[U, D]):
        missing_ui = set(self.ui_enum) - set(table)
        if missing_ui:
            raise ValueError(f"{self.name} codec has no code for {sorted(m.value for m in missing_ui)}")
        codes = list(table.values())
        if set(codes) != set(self.domain_enum) or len(codes) != len(set(codes)):
            raise ValueError(f"{self.name} codec table is not a bijection")

    def encode(self, value: Union[U, str]) -> D:
        """Translate a UI value to its domain code"""
        return self._encode[self.ui_enum(value)]

    def decode(self, value) -> U:
        """Translate a domain code to its UI value, falling back to the default"""
        try:
            return self._decode[self.domain_enum(value)]
        except ValueError:
            logger.warning(
                f"DecodeFallback: unrecognized {self.name} code {value!r}, using {self.default.value!r}"
            )
            return self.default


# Default on decode is the first enumerant of each UI vocabulary
ATTENDANCE_CODEC = StatusCodec(
    "attendance",
    AttendanceStatus,
    AttendanceCode,
    {
        AttendanceStatus.PRESENT: AttendanceCode.PRESENTE,
        AttendanceStatus.ABSENT: AttendanceCode.FALTA,
        AttendanceStatus.LATE: AttendanceCode.TARDANZA,
    },
    default=AttendanceStatus.PRESENT,
)

PARTICIPATION_CODEC = StatusCodec(
    "participation",
    ParticipationLevel,
    ParticipationCode,
    {
        ParticipationLevel.HIGH: ParticipationCode.ALTA,
        ParticipationLevel.MEDIUM: ParticipationCode.MEDIA,
        ParticipationLevel.LOW: ParticipationCode.BAJA,
    },
    default=ParticipationLevel.HIGH,
)
