from lesson_ledger.core.models.school import School, Student
from lesson_ledger.core.models.lesson import Lesson
from lesson_ledger.core.models.package_purchase import PackagePurchase
from lesson_ledger.core.models.lesson_attendance import LessonAttendance

__all__ = [
    "Lesson",
    "LessonAttendance",
    "PackagePurchase",
    "School",
    "Student",
]
