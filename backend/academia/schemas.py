"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import Role, SystemMode, Weekday

TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"


def minutes_of(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


class LoginIn(BaseModel):
    """Payload for the login endpoint."""
    enrollment_number: str
    password: str


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str = Field(min_length=4)


class UserCreate(BaseModel):
    """Admin payload to create a user; students need a course."""
    enrollment_number: str = Field(min_length=1)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    role: Role = Role.STUDENT
    course_id: Optional[int] = None
    specialty: Optional[str] = None

    @model_validator(mode="after")
    def _student_needs_course(self):
        if self.role == Role.STUDENT and self.course_id is None:
            raise ValueError("course_id is required for the STUDENT role")
        return self


class UserUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1)
    last_name: Optional[str] = Field(default=None, min_length=1)
    is_active: Optional[bool] = None


class CourseIn(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    total_terms: Optional[int] = Field(default=None, ge=1)


class SubjectIn(BaseModel):
    """Subject definition with its direct prerequisites."""
    name: str = Field(min_length=1)
    description: str = ""
    credits: int = Field(gt=0)
    prerequisite_ids: List[int] = Field(default_factory=list)


class SubjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    credits: Optional[int] = Field(default=None, gt=0)
    prerequisite_ids: Optional[List[int]] = None


class CurriculumIn(BaseModel):
    course_id: int = Field(gt=0)
    subject_id: int = Field(gt=0)
    term: int = Field(ge=1)


class ScheduleIn(BaseModel):
    """A weekly slot; `end_time` must be later than `start_time`."""
    day: Weekday
    start_time: str = Field(pattern=TIME_PATTERN)
    end_time: str = Field(pattern=TIME_PATTERN)

    @model_validator(mode="after")
    def _end_after_start(self):
        if minutes_of(self.end_time) <= minutes_of(self.start_time):
            raise ValueError("end_time must be later than start_time")
        return self


class GroupIn(BaseModel):
    name: str = Field(min_length=1)
    course_id: int = Field(gt=0)
    subject_id: int = Field(gt=0)
    teacher_id: int = Field(gt=0)
    term: int = Field(ge=1)
    schedules: List[ScheduleIn] = Field(default_factory=list)


class EnrollmentIn(BaseModel):
    student_id: int = Field(gt=0)


class GradeIn(BaseModel):
    """Grade submitted by a teacher on the 0-10 scale."""
    grade: float = Field(ge=0, le=10)


class SystemStateIn(BaseModel):
    maintenance: bool
    expected_mode: Optional[SystemMode] = None


class CourseUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    total_terms: Optional[int] = Field(default=None, ge=1)


class GroupUpdate(BaseModel):
    """Editable group fields; course and subject are fixed once created."""
    name: Optional[str] = Field(default=None, min_length=1)
    teacher_id: Optional[int] = Field(default=None, gt=0)
    term: Optional[int] = Field(default=None, ge=1)


class ScheduleUpdate(BaseModel):
    day: Optional[Weekday] = None
    start_time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    end_time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)


class TeacherProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1)
    last_name: Optional[str] = Field(default=None, min_length=1)
    specialty: Optional[str] = None


class TermCloseResult(BaseModel):
    """Outcome of a term close, serialized with camelCase keys."""
    model_config = ConfigDict(populate_by_name=True)

    message: str
    students_advanced: int = Field(alias="studentsAdvanced")
    quarter_closed: bool = Field(alias="quarterClosed")
    enrollments_finalized: int = Field(default=0, alias="enrollmentsFinalized")
    records_synced: int = Field(default=0, alias="recordsSynced")
