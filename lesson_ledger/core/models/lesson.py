import uuid
from datetime import datetime

from sqlalchemy import Column, Date, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import relationship

from lesson_ledger.db.session import Base


class Lesson(Base):
    """A scheduled lesson. Individual lessons carry student_id; group lessons leave it empty."""

    __tablename__ = "lessons"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    school_id = Column(Uuid, ForeignKey("schools.id", ondelete="CASCADE"), nullable=False, index=True)
    teacher_id = Column(Uuid, nullable=True)  # user id from the identity provider
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="SET NULL"), nullable=True)
    title = Column(String(255), nullable=False)
    date = Column(Date, nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    school = relationship("School")
    student = relationship("Student")
    attendance = relationship(
        "LessonAttendance",
        back_populates="lesson",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
