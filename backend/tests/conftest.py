import os

# Point the module-level engine at a throwaway database before the app is imported.
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from academia import models
from academia.database import create_db_and_tables, get_session
from academia.main import app
from academia.services import AuthService, PWD_CTX


@pytest.fixture
def engine():
    """A fresh in-memory database per test, shared across sessions."""
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def client(engine):
    def _session_override():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = _session_override
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


class Seed:
    """Small factory for committed fixtures rows."""

    def __init__(self, session: Session):
        self.session = session
        self._counter = 0

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        self.session.refresh(obj)
        return obj

    def _next_number(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter:04d}"

    def user(self, role: models.Role, number=None, password=None) -> models.User:
        number = number or self._next_number(role.value[0])
        return self._save(models.User(
            enrollment_number=number,
            first_name="Test",
            last_name=role.value.title(),
            password_hash=PWD_CTX.hash(password or number),
            role=role,
        ))

    def admin(self) -> models.User:
        return self.user(models.Role.ADMIN)

    def course(self, name="Software Engineering", total_terms=None) -> models.Course:
        return self._save(models.Course(name=name, total_terms=total_terms))

    def subject(self, name, prerequisites=(), credits=5) -> models.Subject:
        subject = self._save(models.Subject(name=name, credits=credits))
        for req in prerequisites:
            self.session.add(models.SubjectPrerequisite(subject_id=subject.id, required_subject_id=req.id))
        self.session.commit()
        return subject

    def plan(self, course, subject, term) -> models.CurriculumPlan:
        return self._save(models.CurriculumPlan(course_id=course.id, subject_id=subject.id, term=term))

    def student(self, course=None, term=1) -> models.Student:
        user = self.user(models.Role.STUDENT)
        return self._save(models.Student(user_id=user.id, course_id=course.id if course else None, term=term))

    def teacher(self) -> models.Teacher:
        user = self.user(models.Role.TEACHER)
        return self._save(models.Teacher(user_id=user.id, specialty="Math"))

    def group(self, course, subject, teacher, term=1, name=None) -> models.Group:
        return self._save(models.Group(
            name=name or f"{subject.name}-{term}",
            course_id=course.id,
            subject_id=subject.id,
            teacher_id=teacher.id,
            term=term,
        ))

    def enroll(self, student, group, grade=None, active=True) -> models.Enrollment:
        return self._save(models.Enrollment(student_id=student.id, group_id=group.id, grade=grade, is_active=active))

    def progress(self, student, subject, status=models.ProgressStatus.PASSED, grade=8.0) -> models.ProgressRecord:
        return self._save(models.ProgressRecord(student_id=student.id, subject_id=subject.id, status=status, grade=grade))

    def maintenance(self) -> models.SystemState:
        return self._save(models.SystemState(id=1, mode=models.SystemMode.MAINTENANCE))


@pytest.fixture
def seed(session):
    return Seed(session)


@pytest.fixture
def auth_headers():
    def _headers(user: models.User) -> dict:
        return {"Authorization": f"Bearer {AuthService.issue_token(user)}"}
    return _headers
