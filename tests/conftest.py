# tests/conftest.py

from datetime import date

import httpx
import pytest

from smartclass.crud.academic_client import AcademicClient
from smartclass.schemas.academics_schemas import AcademicPeriod, ClassInstance, UserProfile
from smartclass.services.period_gate import PeriodWindowGate
from smartclass.services.reconciler import ConsistencyReconciler
from smartclass.services.view_cache import ViewStateCache
from fake_backend import FakeAcademicService, create_app

CLASS_ID = 7
TEACHER_PROFILE_ID = 3
STUDENT_IDS = [101, 102, 103]

PERIODS = [
    {"id": 1, "period_type": "bimestre", "number": 1, "year": 2025,
     "start_date": "2025-01-01", "end_date": "2025-03-31"},
    {"id": 2, "period_type": "bimestre", "number": 2, "year": 2025,
     "start_date": "2025-04-01", "end_date": "2025-06-30"},
]

USERS = {
    "admin": {"id": 1, "username": "admin", "user_type": "admin"},
    "teacher": {"id": 2, "username": "mquispe", "user_type": "teacher", "teacher_profile": {"id": TEACHER_PROFILE_ID}},
    "other_teacher": {"id": 3, "username": "jmamani", "user_type": "teacher", "teacher_profile": {"id": 99}},
    "student": {"id": 4, "username": "lcondori", "user_type": "student", "student_profile": {"id": 101}},
    "outsider": {"id": 5, "username": "rflores", "user_type": "student", "student_profile": {"id": 555}},
}


@pytest.fixture
def class_payload():
    return {
        "id": CLASS_ID,
        "name": "Matemáticas 5A",
        "teacher": TEACHER_PROFILE_ID,
        "students": STUDENT_IDS,
        "students_detail": [
            {"id": 101, "first_name": "Luis", "last_name": "Condori"},
            {"id": 102, "first_name": "Ana", "last_name": "Mamani"},
            {"id": 103, "first_name": "Rosa", "last_name": "Quispe"},
        ],
        "periods_detail": PERIODS,
    }


@pytest.fixture
def class_data(class_payload):
    return ClassInstance.model_validate(class_payload)


@pytest.fixture
def first_period():
    return AcademicPeriod.model_validate(PERIODS[0])


@pytest.fixture
def gate():
    return PeriodWindowGate("America/La_Paz")


@pytest.fixture
def users():
    return {name: UserProfile.model_validate(data) for name, data in USERS.items()}


@pytest.fixture
def service(class_payload):
    fake = FakeAcademicService()
    fake.user = USERS["teacher"]
    fake.classes[CLASS_ID] = class_payload
    return fake


@pytest.fixture
def make_client(service):
    """Build an AcademicClient wired to the fake service; create it inside the event loop"""
    app = create_app(service)

    def factory(token: str = "test-token"):
        http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
        return AcademicClient(token=token, http=http)
    return factory


@pytest.fixture
def make_reconciler(make_client):
    def factory(cache=None):
        return ConsistencyReconciler(make_client(), cache or ViewStateCache(), backoff_seconds=0)
    return factory


@pytest.fixture
def full_marks():
    return {"ser": 5, "saber": 45, "hacer": 40, "decidir": 5, "autoevaluacion": 5}


@pytest.fixture
def in_period_date():
    return date(2025, 2, 14)
