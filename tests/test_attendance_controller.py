"""AttendanceController: optimistic toggles, rollback and per-student supersede."""

import asyncio
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from lesson_ledger.api.v1.attendance.schemas import AttendanceRecordResponse
from lesson_ledger.api.v1.package_usage.schemas import PackageUsageResponse
from lesson_ledger.client.api import LedgerApiClient
from lesson_ledger.client.controller import (
    AttendanceController,
    AttendanceGateway,
    Notifier,
    next_attendance_state,
)
from lesson_ledger.client.credentials import StaticTokenProvider
from lesson_ledger.client.exceptions import ApiError, ConnectionFailure
from lesson_ledger.core.models import PackagePurchase
from lesson_ledger.main import app

LESSON_ID = uuid.uuid4()
PACKAGE_ID = uuid.uuid4()


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def error(self, message: str) -> None:
        self.errors.append(message)

    def warning(self, message: str) -> None:
        self.warnings.append(message)


class FakeGateway(AttendanceGateway):
    """In-memory stand-in for the API. save_gate lets a test hold saves in flight."""

    def __init__(self) -> None:
        self.records: Dict[uuid.UUID, AttendanceRecordResponse] = {}
        self.saves: List[Tuple[uuid.UUID, bool]] = []
        self.usage_calls: List[Tuple[uuid.UUID, bool, Optional[uuid.UUID]]] = []
        self.save_gate: Optional[asyncio.Event] = None
        self.fail_saves = False
        self.fail_usage = False
        self.missing_package = False
        self.in_flight = 0
        self.max_in_flight = 0
        self.in_flight_per_student: Dict[uuid.UUID, int] = {}
        self.max_in_flight_per_student = 0

    async def list_attendance(self, lesson_id):
        return list(self.records.values())

    async def save_attendance(self, lesson_id, student_id, attended, comment=None):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        per_student = self.in_flight_per_student.get(student_id, 0) + 1
        self.in_flight_per_student[student_id] = per_student
        self.max_in_flight_per_student = max(self.max_in_flight_per_student, per_student)
        try:
            if self.save_gate is not None:
                await self.save_gate.wait()
            else:
                await asyncio.sleep(0)
            if self.fail_saves:
                raise ConnectionFailure("network down")
            self.saves.append((student_id, attended))
            now = datetime.utcnow()
            existing = self.records.get(student_id)
            record = AttendanceRecordResponse(
                id=existing.id if existing else uuid.uuid4(),
                lesson_id=lesson_id,
                student_id=student_id,
                attended=attended,
                comment=existing.comment if existing else None,
                package_purchase_id=existing.package_purchase_id if existing else None,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self.records[student_id] = record
            return record
        finally:
            self.in_flight -= 1
            self.in_flight_per_student[student_id] -= 1

    async def apply_package_usage(self, lesson_id, student_id, attended, attendance_record_id=None):
        self.usage_calls.append((student_id, attended, attendance_record_id))
        if self.fail_usage:
            raise ApiError(500, "boom")
        if attended and self.missing_package:
            return PackageUsageResponse(missing_package=True, attendance_id=attendance_record_id)
        return PackageUsageResponse(
            attendance_id=attendance_record_id,
            package_purchase_id=PACKAGE_ID if attended else None,
        )


def test_toggle_cycle_order() -> None:
    assert next_attendance_state(None) is True
    assert next_attendance_state(True) is False
    assert next_attendance_state(False) is True


@pytest.mark.asyncio
async def test_toggle_updates_view_before_any_request_completes() -> None:
    gateway = FakeGateway()
    gateway.save_gate = asyncio.Event()
    controller = AttendanceController(gateway, LESSON_ID, RecordingNotifier())
    student_id = uuid.uuid4()

    task = controller.toggle(student_id)

    assert controller.view(student_id).attended is True
    assert controller.is_pending(student_id)
    assert gateway.saves == []
    gateway.save_gate.set()
    outcome = await task
    assert outcome.persisted is True
    assert outcome.package_applied is True
    assert not controller.is_pending(student_id)


@pytest.mark.asyncio
async def test_persisted_record_id_is_passed_to_reconciler() -> None:
    gateway = FakeGateway()
    controller = AttendanceController(gateway, LESSON_ID, RecordingNotifier())
    student_id = uuid.uuid4()

    await controller.toggle(student_id)
    await controller.toggle(student_id)

    record_id = gateway.records[student_id].id
    assert gateway.usage_calls == [(student_id, True, record_id), (student_id, False, record_id)]
    view = controller.view(student_id)
    assert view.attended is False
    assert view.record_id == record_id
    assert view.package_purchase_id is None


@pytest.mark.asyncio
async def test_save_failure_rolls_back_and_notifies() -> None:
    gateway = FakeGateway()
    notifier = RecordingNotifier()
    controller = AttendanceController(gateway, LESSON_ID, notifier)
    student_id = uuid.uuid4()
    await controller.toggle(student_id)

    gateway.fail_saves = True
    task = controller.toggle(student_id)
    assert controller.view(student_id).attended is False
    outcome = await task

    assert outcome.persisted is False
    assert controller.view(student_id).attended is True
    assert notifier.errors == ["Could not save attendance"]
    # No package call for a mark that never reached the store.
    assert len(gateway.usage_calls) == 1


@pytest.mark.asyncio
async def test_unreadable_save_response_rolls_back_and_notifies() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>", headers={"content-type": "text/html"})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    api = LedgerApiClient("http://ledger.test", "service-key", StaticTokenProvider("token"), http=http)
    notifier = RecordingNotifier()
    controller = AttendanceController(api, LESSON_ID, notifier)
    student_id = uuid.uuid4()

    outcome = await controller.toggle(student_id)

    assert outcome.persisted is False
    assert controller.view(student_id).attended is None
    assert notifier.errors == ["Could not save attendance"]
    await http.aclose()


@pytest.mark.asyncio
async def test_first_mark_failure_returns_to_unmarked() -> None:
    gateway = FakeGateway()
    gateway.fail_saves = True
    controller = AttendanceController(gateway, LESSON_ID, RecordingNotifier())
    student_id = uuid.uuid4()

    await controller.toggle(student_id)

    assert controller.view(student_id).attended is None


@pytest.mark.asyncio
async def test_reconciler_failure_keeps_attendance() -> None:
    gateway = FakeGateway()
    gateway.fail_usage = True
    notifier = RecordingNotifier()
    controller = AttendanceController(gateway, LESSON_ID, notifier)
    student_id = uuid.uuid4()

    outcome = await controller.toggle(student_id)

    assert outcome.persisted is True
    assert outcome.package_applied is False
    assert controller.view(student_id).attended is True
    assert notifier.errors == []
    assert len(notifier.warnings) == 1


@pytest.mark.asyncio
async def test_missing_package_is_a_warning() -> None:
    gateway = FakeGateway()
    gateway.missing_package = True
    notifier = RecordingNotifier()
    controller = AttendanceController(gateway, LESSON_ID, notifier)

    outcome = await controller.toggle(uuid.uuid4())

    assert outcome.persisted is True
    assert outcome.missing_package is True
    assert notifier.errors == []
    assert len(notifier.warnings) == 1


@pytest.mark.asyncio
async def test_toggles_on_one_student_supersede_instead_of_racing() -> None:
    gateway = FakeGateway()
    gateway.save_gate = asyncio.Event()
    controller = AttendanceController(gateway, LESSON_ID, RecordingNotifier())
    student_id = uuid.uuid4()

    first = controller.toggle(student_id)
    await asyncio.sleep(0)
    second = controller.toggle(student_id)
    third = controller.toggle(student_id)

    assert first is second is third
    assert controller.view(student_id).attended is True
    gateway.save_gate.set()
    outcome = await first

    # present (in flight) -> absent -> present: the latest value equals what was written.
    assert gateway.saves == [(student_id, True)]
    assert len(gateway.usage_calls) == 1
    assert gateway.max_in_flight_per_student == 1
    assert outcome.attended is True
    assert controller.view(student_id).attended is True


@pytest.mark.asyncio
async def test_superseding_value_is_written_after_in_flight_request() -> None:
    gateway = FakeGateway()
    gateway.save_gate = asyncio.Event()
    controller = AttendanceController(gateway, LESSON_ID, RecordingNotifier())
    student_id = uuid.uuid4()

    task = controller.toggle(student_id)
    await asyncio.sleep(0)
    controller.toggle(student_id)
    gateway.save_gate.set()
    outcome = await task

    assert gateway.saves == [(student_id, True), (student_id, False)]
    assert [call[1] for call in gateway.usage_calls] == [True, False]
    assert outcome.attended is False
    assert controller.view(student_id).attended is False


@pytest.mark.asyncio
async def test_different_students_sync_concurrently() -> None:
    gateway = FakeGateway()
    gateway.save_gate = asyncio.Event()
    controller = AttendanceController(gateway, LESSON_ID, RecordingNotifier())
    anna, jan = uuid.uuid4(), uuid.uuid4()

    controller.toggle(anna)
    controller.toggle(jan)
    await asyncio.sleep(0)

    assert gateway.in_flight == 2
    gateway.save_gate.set()
    outcomes = await controller.wait_idle()
    assert {o.student_id for o in outcomes} == {anna, jan}
    assert gateway.max_in_flight == 2


@pytest.mark.asyncio
async def test_load_marks_students_without_records_as_unmarked() -> None:
    gateway = FakeGateway()
    marked, unmarked = uuid.uuid4(), uuid.uuid4()
    await gateway.save_attendance(LESSON_ID, marked, False)
    controller = AttendanceController(gateway, LESSON_ID, RecordingNotifier())

    await controller.load([marked, unmarked])

    assert controller.view(marked).attended is False
    assert controller.view(unmarked).attended is None
    controller.toggle(marked)
    controller.toggle(unmarked)
    assert controller.view(marked).attended is True
    assert controller.view(unmarked).attended is True
    await controller.wait_idle()


@pytest.mark.asyncio
async def test_controller_against_the_api(
    session_factory, db_session, lesson, student, make_package, make_headers
) -> None:
    from lesson_ledger.db.session import get_db

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    pkg = await make_package(lessons_total=10, lessons_used=9)
    token = make_headers()["Authorization"].removeprefix("Bearer ")
    headers = make_headers()
    http = AsyncClient(transport=ASGITransport(app=app))
    api = LedgerApiClient("http://test", headers["apikey"], StaticTokenProvider(token), http=http)
    notifier = RecordingNotifier()
    controller = AttendanceController(api, lesson.id, notifier)
    try:
        await controller.load([student.id])
        assert controller.view(student.id).attended is None

        outcome = await controller.toggle(student.id)
        assert outcome.package_applied is True
        refreshed = await db_session.get(PackagePurchase, pkg.id, populate_existing=True)
        assert refreshed.lessons_used == 10
        assert refreshed.status == "exhausted"
        assert controller.view(student.id).package_purchase_id == pkg.id

        await controller.toggle(student.id)
        refreshed = await db_session.get(PackagePurchase, pkg.id, populate_existing=True)
        assert refreshed.lessons_used == 9
        assert refreshed.status == "active"
        assert controller.view(student.id).attended is False
        assert notifier.errors == []
    finally:
        await http.aclose()
        app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_absent_mark_does_not_report_a_package_credit() -> None:
    gateway = FakeGateway()
    controller = AttendanceController(gateway, LESSON_ID, RecordingNotifier())
    student_id = uuid.uuid4()

    present = await controller.toggle(student_id)
    absent = await controller.toggle(student_id)

    assert present.package_applied is True
    assert absent.persisted is True
    assert absent.package_applied is False


@pytest.mark.asyncio
async def test_notifier_needs_only_error_and_warning() -> None:
    class ErrorsOnly(Notifier):
        def __init__(self) -> None:
            self.messages: List[str] = []

        def error(self, message: str) -> None:
            self.messages.append(message)

        def warning(self, message: str) -> None:
            self.messages.append(message)

    notifier = ErrorsOnly()
    controller = AttendanceController(FakeGateway(), LESSON_ID, notifier)

    outcome = await controller.toggle(uuid.uuid4())

    assert outcome.persisted is True
    assert notifier.messages == []
