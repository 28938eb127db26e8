"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
catalog, groups, enrollments, progress, system state). Repositories
return SQLModel objects and only `flush`; committing is the job of the
service that owns the surrounding unit of work.
"""

from typing import List, Optional, Sequence, Tuple

from sqlalchemy import func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, select

from . import models

# dialects whose INSERT supports ON CONFLICT DO NOTHING
_CONFLICT_TOLERANT_INSERTS = {"sqlite": sqlite.insert, "postgresql": postgresql.insert}


class UserRepository:
    """CRUD operations for `User` objects and their role profiles."""
    def __init__(self, session: Session):
        self.session = session

    def add(self, user: models.User) -> models.User:
        """Stage a new user and flush to obtain its id."""
        self.session.add(user)
        self.session.flush()
        return user

    def get(self, user_id: int) -> Optional[models.User]:
        return self.session.get(models.User, user_id)

    def get_by_enrollment_number(self, enrollment_number: str) -> Optional[models.User]:
        """Return a `User` by login identifier or `None` if not found."""
        stmt = select(models.User).where(models.User.enrollment_number == enrollment_number)
        return self.session.exec(stmt).first()

    def list_by_role(self, role: models.Role, active_only: bool = True) -> List[models.User]:
        stmt = select(models.User).where(models.User.role == role)
        if active_only:
            stmt = stmt.where(models.User.is_active == True)  # noqa: E712
        return self.session.exec(stmt.order_by(models.User.id)).all()

    def count_by_role(self, role: models.Role) -> int:
        stmt = select(func.count(models.User.id)).where(
            models.User.role == role,
            models.User.is_active == True,  # noqa: E712
        )
        return self.session.exec(stmt).one()

    def delete(self, user: models.User) -> None:
        self.session.delete(user)
        self.session.flush()


class StudentRepository:
    """Lookups and conditional updates on `Student` profiles."""
    def __init__(self, session: Session):
        self.session = session

    def add(self, student: models.Student) -> models.Student:
        self.session.add(student)
        self.session.flush()
        return student

    def get(self, student_id: int) -> Optional[models.Student]:
        return self.session.get(models.Student, student_id)

    def get_by_user(self, user_id: int) -> Optional[models.Student]:
        stmt = select(models.Student).where(models.Student.user_id == user_id)
        return self.session.exec(stmt).first()

    def list_all(self) -> List[models.Student]:
        return self.session.exec(select(models.Student).order_by(models.Student.id)).all()

    def list_by_course(self, course_id: int, term: Optional[int] = None) -> List[models.Student]:
        stmt = select(models.Student).where(models.Student.course_id == course_id)
        if term is not None:
            stmt = stmt.where(models.Student.term == term)
        return self.session.exec(stmt.order_by(models.Student.id)).all()

    def exists_for_course(self, course_id: int) -> bool:
        stmt = select(models.Student.id).where(models.Student.course_id == course_id)
        return self.session.exec(stmt).first() is not None

    def advance_term(self, student_id: int, seen_term: int) -> bool:
        """Move the student from `seen_term` to `seen_term + 1`.

        The update only matches while the stored term still equals
        `seen_term`, so two concurrent evaluations cannot both advance the
        same student. Returns True when this call performed the increment.
        """
        stmt = (
            update(models.Student)
            .where(models.Student.id == student_id, models.Student.term == seen_term)
            .values(term=seen_term + 1)
        )
        result = self.session.exec(stmt)
        return result.rowcount == 1

    def mark_graduated(self, student_id: int) -> bool:
        stmt = (
            update(models.Student)
            .where(models.Student.id == student_id, models.Student.graduated == False)  # noqa: E712
            .values(graduated=True)
        )
        result = self.session.exec(stmt)
        return result.rowcount == 1


class TeacherRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, teacher: models.Teacher) -> models.Teacher:
        self.session.add(teacher)
        self.session.flush()
        return teacher

    def get(self, teacher_id: int) -> Optional[models.Teacher]:
        return self.session.get(models.Teacher, teacher_id)

    def get_by_user(self, user_id: int) -> Optional[models.Teacher]:
        stmt = select(models.Teacher).where(models.Teacher.user_id == user_id)
        return self.session.exec(stmt).first()


class CatalogRepository:
    """Courses, subjects, prerequisite edges and curriculum plan entries."""
    def __init__(self, session: Session):
        self.session = session

    def add(self, obj):
        self.session.add(obj)
        self.session.flush()
        return obj

    def get_course(self, course_id: int) -> Optional[models.Course]:
        return self.session.get(models.Course, course_id)

    def list_courses(self) -> List[models.Course]:
        return self.session.exec(select(models.Course).order_by(models.Course.id)).all()

    def count_courses(self) -> int:
        return self.session.exec(select(func.count(models.Course.id))).one()

    def get_subject(self, subject_id: int) -> Optional[models.Subject]:
        return self.session.get(models.Subject, subject_id)

    def list_subjects(self) -> List[models.Subject]:
        return self.session.exec(select(models.Subject).order_by(models.Subject.id)).all()

    def prerequisite_ids(self, subject_id: int) -> List[int]:
        """Return the ids of the subjects `subject_id` directly requires."""
        stmt = (
            select(models.SubjectPrerequisite.required_subject_id)
            .where(models.SubjectPrerequisite.subject_id == subject_id)
            .order_by(models.SubjectPrerequisite.required_subject_id)
        )
        return list(self.session.exec(stmt).all())

    def dependent_ids(self, subject_id: int) -> List[int]:
        """Return the ids of the subjects that directly require `subject_id`."""
        stmt = (
            select(models.SubjectPrerequisite.subject_id)
            .where(models.SubjectPrerequisite.required_subject_id == subject_id)
            .order_by(models.SubjectPrerequisite.subject_id)
        )
        return list(self.session.exec(stmt).all())

    def replace_prerequisites(self, subject_id: int, required_ids: Sequence[int]) -> None:
        existing = self.session.exec(
            select(models.SubjectPrerequisite).where(models.SubjectPrerequisite.subject_id == subject_id)
        ).all()
        for edge in existing:
            self.session.delete(edge)
        self.session.flush()
        for rid in sorted(set(required_ids)):
            self.session.add(models.SubjectPrerequisite(subject_id=subject_id, required_subject_id=rid))
        self.session.flush()

    def get_plan_entry(self, plan_id: int) -> Optional[models.CurriculumPlan]:
        return self.session.get(models.CurriculumPlan, plan_id)

    def find_plan_entry(self, course_id: int, subject_id: int) -> Optional[models.CurriculumPlan]:
        stmt = select(models.CurriculumPlan).where(
            models.CurriculumPlan.course_id == course_id,
            models.CurriculumPlan.subject_id == subject_id,
        )
        return self.session.exec(stmt).first()

    def plan_for_term(self, course_id: int, term: int) -> List[models.CurriculumPlan]:
        """Return the plan entries that make up the required set of a term."""
        stmt = select(models.CurriculumPlan).where(
            models.CurriculumPlan.course_id == course_id,
            models.CurriculumPlan.term == term,
        ).order_by(models.CurriculumPlan.subject_id)
        return self.session.exec(stmt).all()

    def plan_for_course(self, course_id: int) -> List[models.CurriculumPlan]:
        stmt = select(models.CurriculumPlan).where(
            models.CurriculumPlan.course_id == course_id
        ).order_by(models.CurriculumPlan.term, models.CurriculumPlan.subject_id)
        return self.session.exec(stmt).all()

    def plan_for_subject(self, subject_id: int) -> List[models.CurriculumPlan]:
        stmt = select(models.CurriculumPlan).where(
            models.CurriculumPlan.subject_id == subject_id
        ).order_by(models.CurriculumPlan.course_id)
        return self.session.exec(stmt).all()

    def delete(self, obj) -> None:
        self.session.delete(obj)
        self.session.flush()


class GroupRepository:
    """Groups and their weekly schedules."""
    def __init__(self, session: Session):
        self.session = session

    def add(self, obj):
        self.session.add(obj)
        self.session.flush()
        return obj

    def get(self, group_id: int) -> Optional[models.Group]:
        return self.session.get(models.Group, group_id)

    def list_for_teacher(self, teacher_id: int) -> List[models.Group]:
        stmt = select(models.Group).where(models.Group.teacher_id == teacher_id).order_by(models.Group.id)
        return self.session.exec(stmt).all()

    def exists_for(self, course_id: Optional[int] = None, subject_id: Optional[int] = None) -> bool:
        stmt = select(models.Group.id)
        if course_id is not None:
            stmt = stmt.where(models.Group.course_id == course_id)
        if subject_id is not None:
            stmt = stmt.where(models.Group.subject_id == subject_id)
        return self.session.exec(stmt).first() is not None

    def get_schedule(self, schedule_id: int) -> Optional[models.GroupSchedule]:
        return self.session.get(models.GroupSchedule, schedule_id)

    def delete(self, obj) -> None:
        self.session.delete(obj)
        self.session.flush()

    def subject_ids_offered(self, course_id: int, term: int) -> List[int]:
        """Distinct subjects with at least one group for the course in `term`."""
        stmt = (
            select(models.Group.subject_id)
            .where(models.Group.course_id == course_id, models.Group.term == term)
            .distinct()
            .order_by(models.Group.subject_id)
        )
        return list(self.session.exec(stmt).all())

    def schedules_for(self, group_id: int, day: Optional[models.Weekday] = None) -> List[models.GroupSchedule]:
        stmt = select(models.GroupSchedule).where(models.GroupSchedule.group_id == group_id)
        if day is not None:
            stmt = stmt.where(models.GroupSchedule.day == day)
        return self.session.exec(stmt.order_by(models.GroupSchedule.id)).all()


class EnrollmentRepository:
    """Group membership rows and the bulk queries used at term close."""
    def __init__(self, session: Session):
        self.session = session

    def add(self, enrollment: models.Enrollment) -> models.Enrollment:
        self.session.add(enrollment)
        self.session.flush()
        return enrollment

    def get(self, student_id: int, group_id: int) -> Optional[models.Enrollment]:
        stmt = select(models.Enrollment).where(
            models.Enrollment.student_id == student_id,
            models.Enrollment.group_id == group_id,
        )
        return self.session.exec(stmt).first()

    def list_for_student(self, student_id: int) -> List[models.Enrollment]:
        stmt = select(models.Enrollment).where(models.Enrollment.student_id == student_id).order_by(models.Enrollment.id)
        return self.session.exec(stmt).all()

    def list_for_group(self, group_id: int) -> List[models.Enrollment]:
        stmt = select(models.Enrollment).where(models.Enrollment.group_id == group_id).order_by(models.Enrollment.id)
        return self.session.exec(stmt).all()

    def active_for_student(self, student_id: int) -> List[models.Enrollment]:
        stmt = select(models.Enrollment).where(
            models.Enrollment.student_id == student_id,
            models.Enrollment.is_active == True,  # noqa: E712
        ).order_by(models.Enrollment.id)
        return self.session.exec(stmt).all()

    def active_ungraded(self) -> List[models.Enrollment]:
        stmt = select(models.Enrollment).where(
            models.Enrollment.is_active == True,  # noqa: E712
            models.Enrollment.grade == None,  # noqa: E711
        ).order_by(models.Enrollment.id)
        return self.session.exec(stmt).all()

    def active_graded(self) -> List[models.Enrollment]:
        stmt = select(models.Enrollment).where(
            models.Enrollment.is_active == True,  # noqa: E712
            models.Enrollment.grade != None,  # noqa: E711
        ).order_by(models.Enrollment.id)
        return self.session.exec(stmt).all()


class ProgressRepository:
    """Progress ledger rows and the grade audit trail."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, student_id: int, subject_id: int) -> Optional[models.ProgressRecord]:
        stmt = select(models.ProgressRecord).where(
            models.ProgressRecord.student_id == student_id,
            models.ProgressRecord.subject_id == subject_id,
        )
        return self.session.exec(stmt).first()

    def get_or_create(self, student_id: int, subject_id: int) -> Tuple[models.ProgressRecord, bool]:
        """Return the ledger row for the pair, inserting a PENDING one if missing.

        The insert skips a row that appeared since the lookup, so a writer
        that loses the race picks up the other writer's row instead of
        failing on the (student_id, subject_id) constraint. The flag is True
        when this call inserted the row.
        """
        record = self.get(student_id, subject_id)
        if record is not None:
            return record, False
        dialect_insert = _CONFLICT_TOLERANT_INSERTS.get(self.session.get_bind().dialect.name)
        if dialect_insert is None:
            record = models.ProgressRecord(student_id=student_id, subject_id=subject_id)
            return self.save(record), True
        stmt = (
            dialect_insert(models.ProgressRecord)
            .values(student_id=student_id, subject_id=subject_id, status=models.ProgressStatus.PENDING)
            .on_conflict_do_nothing(index_elements=["student_id", "subject_id"])
        )
        created = self.session.exec(stmt).rowcount == 1
        return self.get(student_id, subject_id), created

    def list_for_student(self, student_id: int) -> List[models.ProgressRecord]:
        stmt = select(models.ProgressRecord).where(
            models.ProgressRecord.student_id == student_id
        ).order_by(models.ProgressRecord.subject_id)
        return self.session.exec(stmt).all()

    def exists_for_subject(self, subject_id: int) -> bool:
        stmt = select(models.ProgressRecord.id).where(models.ProgressRecord.subject_id == subject_id)
        return self.session.exec(stmt).first() is not None

    def passed_subject_ids(self, student_id: int) -> set:
        stmt = select(models.ProgressRecord.subject_id).where(
            models.ProgressRecord.student_id == student_id,
            models.ProgressRecord.status == models.ProgressStatus.PASSED,
        )
        return set(self.session.exec(stmt).all())

    def save(self, record: models.ProgressRecord) -> models.ProgressRecord:
        self.session.add(record)
        self.session.flush()
        return record

    def add_audit(self, entry: models.GradeAudit) -> models.GradeAudit:
        self.session.add(entry)
        self.session.flush()
        return entry

    def audits_for(self, student_id: int, subject_id: int) -> List[models.GradeAudit]:
        stmt = select(models.GradeAudit).where(
            models.GradeAudit.student_id == student_id,
            models.GradeAudit.subject_id == subject_id,
        ).order_by(models.GradeAudit.id)
        return self.session.exec(stmt).all()


class SystemStateRepository:
    """Access to the singleton `SystemState` row."""
    SINGLETON_ID = 1

    def __init__(self, session: Session):
        self.session = session

    def get(self) -> Optional[models.SystemState]:
        return self.session.get(models.SystemState, self.SINGLETON_ID)

    def save(self, state: models.SystemState) -> models.SystemState:
        self.session.add(state)
        self.session.flush()
        return state
