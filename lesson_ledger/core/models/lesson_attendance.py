import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Numeric, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from lesson_ledger.db.session import Base


class LessonAttendance(Base):
    """Attendance of one student at one lesson. No row means the student is not marked yet."""

    __tablename__ = "lesson_attendance"
    __table_args__ = (
        UniqueConstraint("lesson_id", "student_id", name="uq_lesson_attendance_lesson_student"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    lesson_id = Column(Uuid, ForeignKey("lessons.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False)
    attended = Column(Boolean, nullable=False, default=False)
    comment = Column(Text, nullable=True)

    # Credit consumed by this mark; written only by the usage reconciler.
    package_purchase_id = Column(
        Uuid,
        ForeignKey("package_purchases.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    revenue_amount = Column(Numeric(12, 2), nullable=True)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    lesson = relationship("Lesson", back_populates="attendance")
    student = relationship("Student")
    package_purchase = relationship("PackagePurchase")
