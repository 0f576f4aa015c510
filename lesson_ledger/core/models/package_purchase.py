"""Package purchase: prepaid lesson credits of a student."""

import uuid
from datetime import date, datetime

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Uuid
from sqlalchemy.orm import relationship

from lesson_ledger.core.enums import PackageStatus
from lesson_ledger.db.session import Base


class PackagePurchase(Base):
    """
    lessons_used moves only through the usage reconciler or a manual admin edit.
    remaining = lessons_total - lessons_used, never negative.
    """

    __tablename__ = "package_purchases"
    __table_args__ = (
        CheckConstraint("lessons_total >= 1", name="chk_package_purchase_lessons_total"),
        CheckConstraint(
            "lessons_used >= 0 AND lessons_used <= lessons_total",
            name="chk_package_purchase_lessons_used",
        ),
        CheckConstraint(
            "status IN ('active','exhausted','expired')",
            name="chk_package_purchase_status",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid, ForeignKey("schools.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    teacher_id = Column(Uuid, nullable=True)

    lessons_total = Column(Integer, nullable=False, default=1)
    lessons_used = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    price_per_lesson = Column(Numeric(12, 2), nullable=True)
    status = Column(String(20), nullable=False, default=PackageStatus.active.value)

    purchase_date = Column(Date, nullable=False, default=date.today)
    expires_at = Column(Date, nullable=True)

    created_by = Column(Uuid, nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    school = relationship("School")
    student = relationship("Student")

    @property
    def lessons_remaining(self) -> int:
        return max(0, (self.lessons_total or 0) - (self.lessons_used or 0))
