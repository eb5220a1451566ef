# tests/test_reconciler.py

import asyncio
from datetime import date

import httpx
import pytest

from smartclass.config import Settings, settings
from smartclass.crud.academic_client import AcademicClient
from smartclass.services import reconciler as reconciler_module
from smartclass.services.reconciler import (
    ATTENDANCE_PLAN, GRADES_PLAN, PREDICTIONS_PLAN, ConsistencyReconciler, ReconcileState
)
from smartclass.services.view_cache import CacheKind, ViewStateCache
from smartclass.utils.errors import BatchValidationError, GateViolation, RefetchFailure, WriteFailure

CLASS_ID = 7
GRADES_WRITE = "/grades/grades/bulk_create_update/"


def run(make_reconciler, scenario, cache=None):
    """Drive one async scenario against a fresh reconciler and close its client"""
    async def main():
        reconciler = make_reconciler(cache)
        try:
            return await scenario(reconciler)
        finally:
            await reconciler.client.close()
    return asyncio.run(main())


def seeded_cache():
    cache = ViewStateCache()
    cache.put(CLASS_ID, 1, CacheKind.GRADES, [])
    cache.put(CLASS_ID, 2, CacheKind.GRADES, [{"student": "101", "saber": 30}])
    cache.put(CLASS_ID, 1, CacheKind.GRADE_STATS, [])
    cache.put(CLASS_ID, None, CacheKind.FINAL_GRADES, [])
    return cache


def test_grade_save_refreshes_stats_and_final_grades(make_reconciler, service, full_marks):
    cache = seeded_cache()
    before = cache.versions(CLASS_ID)
    grades = [{"student_id": 101, **full_marks}, {"student_id": 102, "saber": 30, "hacer": 21}]

    outcome = run(make_reconciler, lambda r: r.save_grades(CLASS_ID, 1, grades), cache)

    assert outcome.state is ReconcileState.SETTLED
    assert outcome.acknowledgement == {"message": "Grades saved", "count": 2}
    assert cache.version(CLASS_ID, CacheKind.FINAL_GRADES) > before[CacheKind.FINAL_GRADES]
    assert cache.version(CLASS_ID, CacheKind.GRADE_STATS) > before[CacheKind.GRADE_STATS]
    # The other period was invalidated and not refetched
    assert cache.get(CLASS_ID, 2, CacheKind.GRADES) is None

    stats = cache.get(CLASS_ID, 1, CacheKind.GRADE_STATS).payload
    assert stats == [{"student_id": "101", "avg_total": 100.0}, {"student_id": "102", "avg_total": 51.0}]
    finals = cache.get(CLASS_ID, 1, CacheKind.FINAL_GRADES).payload
    assert {f["student_id"]: f["estado_final"] for f in finals} == {"101": "approved", "102": "approved"}


def test_grade_save_runs_write_then_records_stats_aggregates(make_reconciler, service, full_marks):
    outcome = run(make_reconciler, lambda r: r.save_grades(CLASS_ID, 1, [{"student_id": 101, **full_marks}]))

    assert service.paths() == [
        GRADES_WRITE,
        "/grades/grades/by_class_and_period/",
        "/grades/grades/stats/",
        "/grades/final-grades/by_class/",
        "/ml/predictions/by_class/",
    ]
    assert outcome.transitions == [
        ReconcileState.VALIDATING, ReconcileState.WRITING, ReconcileState.INVALIDATING,
        ReconcileState.AWAITING_RECOMPUTE, ReconcileState.REFETCHING, ReconcileState.SETTLED,
    ]
    assert set(outcome.versions) == set(GRADES_PLAN.kinds())


def test_subscribers_hear_every_refreshed_kind(make_reconciler, service, full_marks):
    cache = ViewStateCache()
    seen = []
    cache.subscribe(lambda class_id, kind, version: seen.append(kind))

    run(make_reconciler, lambda r: r.save_grades(CLASS_ID, 1, [{"student_id": 101, **full_marks}]), cache)

    assert seen == GRADES_PLAN.kinds()


def test_invalid_grade_never_reaches_the_network(make_reconciler, service):
    holder = {}

    async def scenario(reconciler):
        holder["reconciler"] = reconciler
        return await reconciler.save_grades(CLASS_ID, 1, [
            {"student_id": 101, "saber": 50},
            {"student_id": 102, "ser": 5},
            {"student_id": 103, "hacer": -1},
        ])

    with pytest.raises(BatchValidationError) as exc:
        run(make_reconciler, scenario)

    assert len(exc.value.errors) == 2
    assert "Student 101" in str(exc.value)
    assert "45" in str(exc.value)
    assert service.requests == []
    assert holder["reconciler"].state is ReconcileState.IDLE


def test_write_failure_leaves_cache_alone(make_reconciler, service, full_marks):
    service.fail("POST", GRADES_WRITE, 400, "Class is closed for grading")
    cache = seeded_cache()
    before = cache.versions(CLASS_ID)

    with pytest.raises(WriteFailure) as exc:
        run(make_reconciler, lambda r: r.save_grades(CLASS_ID, 1, [{"student_id": 101, **full_marks}]), cache)

    assert exc.value.detail == "Class is closed for grading"
    assert exc.value.status_code == 400
    assert cache.versions(CLASS_ID) == before
    assert cache.get(CLASS_ID, 2, CacheKind.GRADES) is not None
    assert service.paths() == [GRADES_WRITE]
    assert service.grades == {}


def test_refetch_failure_keeps_the_write_and_reports_stale_kinds(make_reconciler, service, full_marks):
    service.fail("GET", "/grades/final-grades/by_class/", 503, "Recompute in progress")
    cache = ViewStateCache()
    seen = []
    cache.subscribe(lambda class_id, kind, version: seen.append(kind))

    with pytest.raises(RefetchFailure) as exc:
        run(make_reconciler, lambda r: r.save_grades(CLASS_ID, 1, [{"student_id": 101, **full_marks}]), cache)

    assert exc.value.acknowledgement["count"] == 1
    assert exc.value.refreshed == ["grades", "grade_stats"]
    assert exc.value.stale == ["final_grades", "predictions"]
    assert seen == [CacheKind.GRADES, CacheKind.GRADE_STATS]
    assert cache.get(CLASS_ID, 1, CacheKind.FINAL_GRADES) is None
    assert (CLASS_ID, 1, "101") in service.grades


def test_retry_refresh_skips_write_and_backoff(make_reconciler, service, full_marks):
    service.grades[(CLASS_ID, 1, "101")] = {k: float(v) for k, v in full_marks.items()}

    outcome = run(make_reconciler, lambda r: r.retry_refresh(CLASS_ID, 1, GRADES_PLAN))

    assert service.writes() == []
    assert ReconcileState.WRITING not in outcome.transitions
    assert ReconcileState.AWAITING_RECOMPUTE not in outcome.transitions
    assert outcome.state is ReconcileState.SETTLED
    assert set(outcome.versions) == set(GRADES_PLAN.kinds())


def test_results_are_discarded_once_the_view_is_gone(make_reconciler, service, full_marks):
    cache = seeded_cache()

    outcome = run(
        make_reconciler,
        lambda r: r.save_grades(CLASS_ID, 1, [{"student_id": 101, **full_marks}], is_active=lambda: False),
        cache,
    )

    assert outcome.discarded
    assert outcome.versions == {}
    assert cache.get(CLASS_ID, 1, CacheKind.GRADES) is None
    assert cache.get(CLASS_ID, 1, CacheKind.FINAL_GRADES) is None


def test_load_reads_through_once(make_reconciler, service):
    service.grades[(CLASS_ID, 1, "102")] = {"ser": 5.0, "saber": 20.0, "hacer": 10.0, "decidir": 0.0, "autoevaluacion": 0.0}

    async def scenario(reconciler):
        first = await reconciler.load(CLASS_ID, 1, CacheKind.GRADES)
        second = await reconciler.load(CLASS_ID, 1, CacheKind.GRADES)
        return first, second

    first, second = run(make_reconciler, scenario)

    assert first.version == second.version == 1
    assert first.payload[0]["nota_total"] == 35.0
    assert service.paths() == ["/grades/grades/by_class_and_period/"]


def test_attendance_is_sent_in_domain_codes(make_reconciler, service, first_period, in_period_date):
    statuses = {101: "absent", "102": "late"}

    outcome = run(
        make_reconciler,
        lambda r: r.save_attendance(CLASS_ID, first_period, in_period_date, statuses, [101, 102, 103]),
    )

    assert {a["student"]: a["status"] for a in service.attendances} == {
        "101": "falta", "102": "tardanza", "103": "presente",
    }
    assert all(a["date"] == "2025-02-14" for a in service.attendances)
    assert set(outcome.versions) == set(ATTENDANCE_PLAN.kinds())
    assert service.paths()[1:] == [
        "/academic/attendances/by_class_and_period/",
        "/academic/attendances/stats/",
        "/ml/predictions/by_class/",
    ]


def test_participation_defaults_to_medium(make_reconciler, service, first_period, in_period_date):
    run(
        make_reconciler,
        lambda r: r.save_participation(CLASS_ID, first_period, in_period_date, {103: "high"}, [101, 103]),
    )

    assert {p["student"]: p["level"] for p in service.participations} == {"101": "media", "103": "alta"}


def test_attendance_outside_period_is_rejected_locally(make_reconciler, service, first_period):
    with pytest.raises(BatchValidationError) as exc:
        run(
            make_reconciler,
            lambda r: r.save_attendance(CLASS_ID, first_period, date(2025, 4, 2), {101: "present"}),
        )

    assert isinstance(exc.value.errors[0], GateViolation)
    assert service.requests == []


def test_unknown_attendance_status_is_rejected(make_reconciler, service, first_period, in_period_date):
    with pytest.raises(BatchValidationError) as exc:
        run(
            make_reconciler,
            lambda r: r.save_attendance(CLASS_ID, first_period, in_period_date, {101: "presente"}),
        )

    assert "Student 101" in str(exc.value)
    assert service.requests == []


def test_update_predictions_refreshes_prediction_views(make_reconciler, service, full_marks):
    service.grades[(CLASS_ID, 1, "101")] = {k: float(v) for k, v in full_marks.items()}
    cache = ViewStateCache()

    outcome = run(make_reconciler, lambda r: r.update_predictions(CLASS_ID, include_retrospective=True), cache)

    assert service.prediction_runs == 1
    assert outcome.acknowledgement == {"updated_count": 1}
    assert set(outcome.versions) == set(PREDICTIONS_PLAN.kinds())
    assert cache.get(CLASS_ID, None, CacheKind.PREDICTIONS).payload[0]["run"] == 1
    assert service.paths() == [
        "/ml/predictions/update_class_predictions/",
        "/ml/predictions/stats/",
        "/ml/predictions/by_class/",
        "/ml/prediction-history/by_class/",
        "/ml/prediction-history/comparison_stats/",
    ]


def test_recalculate_final_grades(make_reconciler, service, full_marks):
    service.grades[(CLASS_ID, 1, "101")] = {k: float(v) for k, v in full_marks.items()}
    service.grades[(CLASS_ID, 2, "101")] = dict.fromkeys(full_marks, 0.0)
    cache = ViewStateCache()

    outcome = run(make_reconciler, lambda r: r.recalculate_final_grades(CLASS_ID, 1), cache)

    assert outcome.acknowledgement["message"] == "Recalculated"
    final = cache.get(CLASS_ID, 1, CacheKind.FINAL_GRADES).payload[0]
    assert final["nota_final"] == 50.0
    assert final["estado_final"] == "failed"
    assert CacheKind.PREDICTIONS not in outcome.versions


def test_retrain_model(make_reconciler, service):
    outcome = run(make_reconciler, lambda r: r.retrain_model(CLASS_ID))

    assert outcome.acknowledgement == {"validation_score": 0.875}
    assert service.writes() == [("POST", "/ml/predictions/retrain_model/")]


# --- backoff ---


def test_waits_for_backend_recompute_before_refetching(make_client, service, full_marks, monkeypatch):
    real_sleep = asyncio.sleep
    waits = []

    async def recording_sleep(delay, *args, **kwargs):
        if delay:
            waits.append((delay, service.paths()))
        await real_sleep(0)

    monkeypatch.setattr(reconciler_module.asyncio, "sleep", recording_sleep)

    async def main():
        reconciler = ConsistencyReconciler(make_client(), ViewStateCache())
        try:
            await reconciler.save_grades(CLASS_ID, 1, [{"student_id": 101, **full_marks}])
            after_save = list(waits)
            await reconciler.retry_refresh(CLASS_ID, 1, GRADES_PLAN)
            return after_save
        finally:
            await reconciler.client.close()

    after_save = asyncio.run(main())

    assert Settings.model_fields["RECOMPUTE_BACKOFF_SECONDS"].default == 3.0
    # One wait, after the write and before the first read
    assert after_save == [(settings.RECOMPUTE_BACKOFF_SECONDS, [GRADES_WRITE])]
    # Manual refresh does not wait
    assert waits == after_save


# --- aborted runs ---


def mock_reconciler(handler, backoff_seconds=0):
    client = AcademicClient(token="t", http=httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://testserver"
    ))
    return ConsistencyReconciler(client, ViewStateCache(), backoff_seconds=backoff_seconds)


def html_reads(request):
    if request.method == "POST":
        return httpx.Response(201, json={"message": "Grades saved", "count": 1})
    return httpx.Response(200, text="<html>Bad gateway</html>")


def html_everywhere(request):
    return httpx.Response(200, text="<html>Bad gateway</html>")


def test_malformed_read_after_write_is_a_refetch_failure(full_marks):
    reconciler = mock_reconciler(html_reads)

    async def main():
        async with reconciler.client:
            await reconciler.save_grades(CLASS_ID, 1, [{"student_id": 101, **full_marks}])

    with pytest.raises(RefetchFailure) as exc:
        asyncio.run(main())

    assert exc.value.acknowledgement == {"message": "Grades saved", "count": 1}
    assert exc.value.refreshed == []
    assert exc.value.stale == ["grades", "grade_stats", "final_grades", "predictions"]
    assert "Malformed response" in str(exc.value)
    assert reconciler.state is ReconcileState.FAILED
    assert not reconciler.in_flight


def test_malformed_write_reply_is_a_write_failure(full_marks):
    reconciler = mock_reconciler(html_everywhere)

    async def main():
        async with reconciler.client:
            await reconciler.save_grades(CLASS_ID, 1, [{"student_id": 101, **full_marks}])

    with pytest.raises(WriteFailure) as exc:
        asyncio.run(main())

    assert exc.value.status_code == 200
    assert reconciler.state is ReconcileState.FAILED
    assert not reconciler.in_flight


def test_cancelled_run_does_not_stay_in_flight(make_client, service):
    async def main():
        reconciler = ConsistencyReconciler(make_client(), ViewStateCache(), backoff_seconds=5)
        try:
            task = asyncio.create_task(reconciler.recalculate_final_grades(CLASS_ID))
            for _ in range(10000):
                if reconciler.state is ReconcileState.AWAITING_RECOMPUTE:
                    break
                await asyncio.sleep(0)
            assert reconciler.state is ReconcileState.AWAITING_RECOMPUTE
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return reconciler
        finally:
            await reconciler.client.close()

    reconciler = asyncio.run(main())

    assert reconciler.state is ReconcileState.FAILED
    assert not reconciler.in_flight
    assert service.paths() == ["/grades/final-grades/recalculate_all/"]


def test_unexpected_error_in_preparation_ends_the_run(make_reconciler, service, first_period):
    holder = {}

    async def scenario(reconciler):
        holder["reconciler"] = reconciler
        return await reconciler.save_attendance(CLASS_ID, first_period, "14/02/2025", {101: "present"})

    with pytest.raises(ValueError) as exc:
        run(make_reconciler, scenario)

    assert not isinstance(exc.value, BatchValidationError)
    assert holder["reconciler"].state is ReconcileState.FAILED
    assert not holder["reconciler"].in_flight
    assert service.requests == []


def test_view_closing_mid_refetch_announces_what_was_stored(make_reconciler, service, full_marks):
    cache = ViewStateCache()
    seen = []
    cache.subscribe(lambda class_id, kind, version: seen.append(kind))
    # Active after the first read, gone after the second
    answers = iter([True, False])

    outcome = run(
        make_reconciler,
        lambda r: r.save_grades(CLASS_ID, 1, [{"student_id": 101, **full_marks}], is_active=lambda: next(answers)),
        cache,
    )

    assert outcome.discarded
    assert outcome.versions == {CacheKind.GRADES: 1}
    assert seen == [CacheKind.GRADES]
    assert cache.get(CLASS_ID, 1, CacheKind.GRADES).version == 1
    assert cache.get(CLASS_ID, 1, CacheKind.GRADE_STATS) is None
