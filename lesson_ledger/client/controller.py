"""
Attendance controller for the lesson view.

Toggles are applied to the in-memory view immediately and persisted in the
background. Each student has at most one sync in flight; toggles made while it
runs supersede each other and only the latest value is written afterwards.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from pydantic import BaseModel

from lesson_ledger.api.v1.attendance.schemas import AttendanceRecordResponse
from lesson_ledger.api.v1.package_usage.schemas import PackageUsageResponse

from .exceptions import ClientError

logger = logging.getLogger(__name__)


class AttendanceGateway(ABC):
    """What the controller needs from the backend. LedgerApiClient satisfies it."""

    @abstractmethod
    async def list_attendance(self, lesson_id: UUID) -> List[AttendanceRecordResponse]:
        ...

    @abstractmethod
    async def save_attendance(
        self,
        lesson_id: UUID,
        student_id: UUID,
        attended: bool,
        comment: Optional[str] = None,
    ) -> AttendanceRecordResponse:
        ...

    @abstractmethod
    async def apply_package_usage(
        self,
        lesson_id: UUID,
        student_id: UUID,
        attended: bool,
        attendance_record_id: Optional[UUID] = None,
    ) -> PackageUsageResponse:
        ...


class Notifier(ABC):
    """User-visible notices (toasts in the web UI)."""

    @abstractmethod
    def error(self, message: str) -> None:
        ...

    @abstractmethod
    def warning(self, message: str) -> None:
        ...


class LoggingNotifier(Notifier):
    def error(self, message: str) -> None:
        logger.error(message)

    def warning(self, message: str) -> None:
        logger.warning(message)


class AttendanceView(BaseModel):
    """Attendance of one student as shown to the user. attended=None means not marked yet."""

    student_id: UUID
    attended: Optional[bool] = None
    comment: Optional[str] = None
    record_id: Optional[UUID] = None
    package_purchase_id: Optional[UUID] = None

    @classmethod
    def from_record(cls, record: AttendanceRecordResponse) -> "AttendanceView":
        return cls(
            student_id=record.student_id,
            attended=record.attended,
            comment=record.comment,
            record_id=record.id,
            package_purchase_id=record.package_purchase_id,
        )


class ToggleOutcome(BaseModel):
    student_id: UUID
    attended: Optional[bool] = None
    persisted: bool
    # True when the mark is present and linked to a package credit.
    package_applied: bool = False
    missing_package: bool = False


def next_attendance_state(current: Optional[bool]) -> bool:
    """unmarked -> present -> absent -> present -> ..."""
    if current is None:
        return True
    return not current


class AttendanceController:
    def __init__(
        self,
        gateway: AttendanceGateway,
        lesson_id: UUID,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._gateway = gateway
        self._lesson_id = lesson_id
        self._notifier = notifier or LoggingNotifier()
        self._views: Dict[UUID, AttendanceView] = {}
        # Last state confirmed by the store; rollback target.
        self._persisted: Dict[UUID, AttendanceView] = {}
        self._pending: Dict[UUID, asyncio.Task] = {}

    @property
    def lesson_id(self) -> UUID:
        return self._lesson_id

    async def load(self, student_ids: Iterable[UUID]) -> None:
        records = await self._gateway.list_attendance(self._lesson_id)
        by_student = {r.student_id: r for r in records}
        for student_id in student_ids:
            record = by_student.get(student_id)
            if record is None:
                view = AttendanceView(student_id=student_id)
            else:
                view = AttendanceView.from_record(record)
            self._views[student_id] = view
            self._persisted[student_id] = view.model_copy()

    def view(self, student_id: UUID) -> AttendanceView:
        return self._views.get(student_id) or AttendanceView(student_id=student_id)

    def views(self) -> List[AttendanceView]:
        return list(self._views.values())

    def is_pending(self, student_id: UUID) -> bool:
        task = self._pending.get(student_id)
        return task is not None and not task.done()

    def toggle(self, student_id: UUID) -> "asyncio.Task[ToggleOutcome]":
        """Flip the student's attendance now; the returned task finishes once the store agrees."""
        if student_id not in self._views:
            self._views[student_id] = AttendanceView(student_id=student_id)
            self._persisted[student_id] = AttendanceView(student_id=student_id)
        view = self._views[student_id]
        view.attended = next_attendance_state(view.attended)

        task = self._pending.get(student_id)
        if task is not None and not task.done():
            # The running sync re-reads the view before it finishes.
            return task
        task = asyncio.create_task(self._sync(student_id))
        self._pending[student_id] = task
        return task

    async def wait_idle(self) -> List[ToggleOutcome]:
        return list(await asyncio.gather(*list(self._pending.values())))

    async def _sync(self, student_id: UUID) -> ToggleOutcome:
        try:
            while True:
                target = self._views[student_id].attended
                try:
                    record = await self._gateway.save_attendance(self._lesson_id, student_id, target)
                except ClientError as e:
                    logger.warning(
                        "attendance save failed lesson=%s student=%s: %s",
                        self._lesson_id, student_id, e,
                    )
                    restored = self._persisted[student_id].model_copy()
                    self._views[student_id] = restored
                    self._notifier.error("Could not save attendance")
                    return ToggleOutcome(student_id=student_id, attended=restored.attended, persisted=False)

                persisted = AttendanceView.from_record(record)
                self._persisted[student_id] = persisted
                outcome = await self._reconcile(student_id, persisted)

                view = self._views[student_id]
                view.record_id = persisted.record_id
                view.package_purchase_id = persisted.package_purchase_id
                if view.attended == persisted.attended:
                    view.comment = persisted.comment
                    return outcome
                logger.debug("attendance toggle superseded student=%s, syncing latest value", student_id)
        finally:
            if self._pending.get(student_id) is asyncio.current_task():
                del self._pending[student_id]

    async def _reconcile(self, student_id: UUID, persisted: AttendanceView) -> ToggleOutcome:
        """Package accounting is best effort: failures warn but never undo the attendance mark."""
        try:
            usage = await self._gateway.apply_package_usage(
                self._lesson_id,
                student_id,
                persisted.attended,
                persisted.record_id,
            )
        except ClientError as e:
            logger.warning(
                "package usage failed lesson=%s student=%s: %s",
                self._lesson_id, student_id, e,
            )
            self._notifier.warning("Attendance saved, but the package could not be updated")
            return ToggleOutcome(student_id=student_id, attended=persisted.attended, persisted=True)

        if usage.attendance_id is not None:
            persisted.record_id = usage.attendance_id
        persisted.package_purchase_id = usage.package_purchase_id
        if usage.missing_package:
            self._notifier.warning("Attendance saved, but the student has no lessons left in a package")
            return ToggleOutcome(
                student_id=student_id,
                attended=persisted.attended,
                persisted=True,
                missing_package=True,
            )
        return ToggleOutcome(
            student_id=student_id,
            attended=persisted.attended,
            persisted=True,
            package_applied=bool(persisted.attended) and usage.package_purchase_id is not None,
        )
