import logging
from datetime import date
from typing import Any, Dict, List, Optional
import httpx
from pydantic import BaseModel
from smartclass.config import settings
from smartclass.schemas.academics_schemas import AcademicPeriod, ClassInstance, UserProfile
from smartclass.schemas.attendance_schemas import AttendanceBulkCreate, ParticipationBulkCreate
from smartclass.schemas.grades_schemas import BulkGradeWrite, RecalculateFinalGradesRequest
from smartclass.schemas.ml_model import (
    RetrainModelRequest, RetrospectivePredictionsRequest, UpdatePredictionsRequest
)
from smartclass.utils.errors import AcademicClientError

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


class AcademicClient:
    """
    Async client for the academic service.

    Every request carries the session token as a bearer credential.
    Pass `http` to hand over a preconfigured httpx.AsyncClient (tests mount
    a fake service through httpx.ASGITransport this way); close() closes it.
    """

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 http: Optional[httpx.AsyncClient] = None):
        self.token = token if token is not None else settings.ACCESS_TOKEN
        self.http = http or httpx.AsyncClient(
            base_url=base_url or settings.API_URL,
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
        )
        self.http.headers["Content-Type"] = "application/json"

    async def close(self):
        await self.http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    def _headers(self) -> Dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    async def _request(self, method: str, url: str, params: Optional[Dict[str, Any]] = None,
                       body: Optional[BaseModel] = None) -> Any:
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        json_body = body.model_dump(mode="json") if body is not None else None
        try:
            response = await self.http.request(
                method, url, params=params, json=json_body, headers=self._headers()
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail = _error_detail(e.response)
            logger.error(f"{method} {url} rejected ({e.response.status_code}): {detail}")
            raise AcademicClientError(detail, e.response.status_code) from e
        except httpx.RequestError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise AcademicClientError(str(e) or e.__class__.__name__) from e
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"{method} {url} returned a malformed body: {response.text[:200]!r}")
            raise AcademicClientError(f"Malformed response from {url}", response.status_code) from e

    # Session and class data
    async def get_user_profile(self) -> UserProfile:
        return UserProfile.model_validate(await self._request("GET", "/users/users/me/"))

    async def get_class(self, class_id: int) -> ClassInstance:
        return ClassInstance.model_validate(await self._request("GET", f"/academic/classes/{class_id}/"))

    async def get_class_periods(self, class_id: int) -> List[AcademicPeriod]:
        data = await self._request("GET", f"/academic/classes/{class_id}/periods/")
        return [AcademicPeriod.model_validate(p) for p in data]

    # Grades
    async def bulk_write_grades(self, payload: BulkGradeWrite) -> Any:
        logger.info(f"Saving {len(payload.grades)} grades for class {payload.class_instance} period {payload.period}")
        return await self._request("POST", "/grades/grades/bulk_create_update/", body=payload)

    async def get_grades_by_class_and_period(self, class_id: int, period_id: int) -> List[Dict[str, Any]]:
        return await self._request(
            "GET", "/grades/grades/by_class_and_period/",
            params={"class_id": class_id, "period_id": period_id},
        )

    async def get_grade_stats(self, class_id: int, period_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self._request(
            "GET", "/grades/grades/stats/", params={"class_id": class_id, "period_id": period_id}
        )

    async def get_final_grades_by_class(self, class_id: int) -> List[Dict[str, Any]]:
        return await self._request("GET", "/grades/final-grades/by_class/", params={"class_id": class_id})

    async def recalculate_final_grades(self, class_id: int) -> Any:
        return await self._request(
            "POST", "/grades/final-grades/recalculate_all/", body=RecalculateFinalGradesRequest(class_id=class_id)
        )

    # Attendance
    async def bulk_write_attendance(self, payload: AttendanceBulkCreate) -> Any:
        logger.info(f"Saving {len(payload.attendances)} attendances for class {payload.class_instance} on {payload.date}")
        return await self._request("POST", "/academic/attendances/bulk_create/", body=payload)

    async def get_attendances_by_class_and_period(self, class_id: int, period_id: int,
                                                  on_date: Optional[date] = None) -> List[Dict[str, Any]]:
        return await self._request(
            "GET", "/academic/attendances/by_class_and_period/",
            params={"class_id": class_id, "period_id": period_id,
                    "date": on_date.isoformat() if on_date else None},
        )

    async def get_attendance_stats(self, class_id: int, period_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self._request(
            "GET", "/academic/attendances/stats/", params={"class_id": class_id, "period_id": period_id}
        )

    # Participation
    async def bulk_write_participation(self, payload: ParticipationBulkCreate) -> Any:
        logger.info(f"Saving {len(payload.participations)} participations for class {payload.class_instance} on {payload.date}")
        return await self._request("POST", "/academic/participations/bulk_create/", body=payload)

    async def get_participations_by_class_and_period(self, class_id: int, period_id: int,
                                                     on_date: Optional[date] = None) -> List[Dict[str, Any]]:
        return await self._request(
            "GET", "/academic/participations/by_class_and_period/",
            params={"class_id": class_id, "period_id": period_id,
                    "date": on_date.isoformat() if on_date else None},
        )

    async def get_participation_stats(self, class_id: int, period_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self._request(
            "GET", "/academic/participations/stats/", params={"class_id": class_id, "period_id": period_id}
        )

    # ML predictions
    async def get_predictions_by_class(self, class_id: int) -> List[Dict[str, Any]]:
        return await self._request("GET", "/ml/predictions/by_class/", params={"class_id": class_id})

    async def get_prediction_stats(self, class_id: int) -> Any:
        return await self._request("GET", "/ml/predictions/stats/", params={"class_id": class_id})

    async def update_class_predictions(self, class_id: int, include_retrospective: bool = False) -> Any:
        return await self._request(
            "POST", "/ml/predictions/update_class_predictions/",
            body=UpdatePredictionsRequest(class_id=class_id, include_retrospective=include_retrospective),
        )

    async def generate_retrospective_predictions(self, class_id: int, period_id: Optional[int] = None) -> Any:
        return await self._request(
            "POST", "/ml/predictions/generate_retrospective_predictions/",
            body=RetrospectivePredictionsRequest(class_id=class_id, period_id=period_id),
        )

    async def retrain_model(self, class_id: int) -> Any:
        return await self._request(
            "POST", "/ml/predictions/retrain_model/", body=RetrainModelRequest(class_id=class_id)
        )

    async def get_prediction_history_by_class(self, class_id: int) -> List[Dict[str, Any]]:
        return await self._request("GET", "/ml/prediction-history/by_class/", params={"class_id": class_id})

    async def get_comparison_stats(self, class_id: int) -> Any:
        return await self._request(
            "GET", "/ml/prediction-history/comparison_stats/", params={"class_id": class_id}
        )


def _error_detail(response: httpx.Response) -> str:
    """Server message from an error body, `error` first then `detail`"""
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(data, dict):
        message = data.get("error") or data.get("detail")
        if message:
            return str(message)
    return str(data)
