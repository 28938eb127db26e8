"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Each class maps to a table and uses relationships where appropriate.
Composite uniqueness (one progress record per student/subject, one plan
entry per course/subject, one enrollment per student/group) is enforced
by the database through `UniqueConstraint`s.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "ADMIN"
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"


class ProgressStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    PASSED = "PASSED"
    FAILED = "FAILED"


class SystemMode(str, Enum):
    ACTIVE = "ACTIVE"
    MAINTENANCE = "MAINTENANCE"


class Weekday(str, Enum):
    MONDAY = "MONDAY"
    TUESDAY = "TUESDAY"
    WEDNESDAY = "WEDNESDAY"
    THURSDAY = "THURSDAY"
    FRIDAY = "FRIDAY"
    SATURDAY = "SATURDAY"


class GradeSource(str, Enum):
    TEACHER = "TEACHER"
    TERM_CLOSE = "TERM_CLOSE"


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `enrollment_number`: unique login identifier, also the initial password
    - `password_hash`: hashed password string (never store plaintext)
    - `role`: one of ADMIN, STUDENT or TEACHER
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    enrollment_number: str = Field(index=True, nullable=False, unique=True)
    first_name: str
    last_name: str
    password_hash: str
    role: Role = Field(default=Role.STUDENT)
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)


class Course(SQLModel, table=True):
    """A program of study. `total_terms` caps advancement when set."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: str = ""
    total_terms: Optional[int] = None


class Student(SQLModel, table=True):
    """Student profile attached to a `User`.

    `term` is the current quarter counter; it starts at 1 and only ever
    grows. `graduated` is set once the final term of a capped course is
    complete.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True)
    course_id: Optional[int] = Field(default=None, foreign_key="course.id", index=True)
    term: int = 1
    has_paid: bool = False
    graduated: bool = False


class Teacher(SQLModel, table=True):
    """Teacher profile attached to a `User`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True)
    specialty: str = ""


class Subject(SQLModel, table=True):
    """A subject in the catalog with a positive credit weight."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: str = ""
    credits: int = 1


class SubjectPrerequisite(SQLModel, table=True):
    """Edge `subject_id` requires `required_subject_id` to be passed first."""
    subject_id: int = Field(foreign_key="subject.id", primary_key=True)
    required_subject_id: int = Field(foreign_key="subject.id", primary_key=True)


class CurriculumPlan(SQLModel, table=True):
    """Binds a subject to the term of a course in which it is required."""
    __table_args__ = (UniqueConstraint("course_id", "subject_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(foreign_key="course.id", index=True)
    subject_id: int = Field(foreign_key="subject.id")
    term: int = Field(index=True)


class Group(SQLModel, table=True):
    """An offering of a course subject taught by one teacher in a term."""
    __tablename__ = "course_group"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    course_id: int = Field(foreign_key="course.id", index=True)
    subject_id: int = Field(foreign_key="subject.id", index=True)
    teacher_id: int = Field(foreign_key="teacher.id", index=True)
    term: int = Field(index=True)
    schedules: List["GroupSchedule"] = Relationship(back_populates="group")


class GroupSchedule(SQLModel, table=True):
    """A weekly time slot of a `Group`; times are HH:MM strings."""
    id: Optional[int] = Field(default=None, primary_key=True)
    group_id: int = Field(foreign_key="course_group.id", index=True)
    day: Weekday
    start_time: str
    end_time: str
    group: Optional[Group] = Relationship(back_populates="schedules")


class Enrollment(SQLModel, table=True):
    """A student's membership in a group and its grade.

    An enrollment is active until its grade is finalized.
    """
    __table_args__ = (UniqueConstraint("student_id", "group_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    group_id: int = Field(foreign_key="course_group.id", index=True)
    grade: Optional[float] = None
    is_active: bool = True
    completed_at: Optional[datetime] = None


class ProgressRecord(SQLModel, table=True):
    """Ledger entry: completion status of one subject for one student."""
    __table_args__ = (UniqueConstraint("student_id", "subject_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    subject_id: int = Field(foreign_key="subject.id", index=True)
    status: ProgressStatus = Field(default=ProgressStatus.PENDING)
    grade: Optional[float] = None
    completed_at: Optional[datetime] = None


class GradeAudit(SQLModel, table=True):
    """Append-only trail of every grade written to the ledger."""
    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    subject_id: int = Field(foreign_key="subject.id")
    enrollment_id: Optional[int] = Field(default=None, foreign_key="enrollment.id")
    previous_grade: Optional[float] = None
    new_grade: float
    source: GradeSource
    actor_user_id: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=_utcnow)


class SystemState(SQLModel, table=True):
    """Singleton row (id=1) holding the operational mode."""
    id: int = Field(default=1, primary_key=True)
    mode: SystemMode = Field(default=SystemMode.ACTIVE)
    updated_at: datetime = Field(default_factory=_utcnow)
