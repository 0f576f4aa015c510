from enum import Enum


class PackageStatus(str, Enum):
    active = "active"
    exhausted = "exhausted"
    expired = "expired"


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    TEACHER = "TEACHER"
