"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories
and the progression engine. Services perform validation, execute domain
logic and own the transaction: every mutating method runs inside
`unit_of_work` so it is either fully applied or rolled back.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

import jwt
from passlib.context import CryptContext
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .database import unit_of_work
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailure
from .progression import (
    AdvancementController,
    EligibilityResolver,
    ProgressLedger,
    SystemStateService,
    validate_grade,
)
from .schemas import minutes_of

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
logger = logging.getLogger("academia.services")


class AuthService:
    """Authentication related operations (login + password change)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def authenticate(self, enrollment_number: str, password: str):
        """Verify credentials and return `(token, user)` on success.

        Returns `None` if the user is unknown, inactive or the password
        does not match.
        """
        user = self.user_repo.get_by_enrollment_number(enrollment_number)
        if not user or not user.is_active:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        return self.issue_token(user), user

    @staticmethod
    def issue_token(user: models.User) -> str:
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "role": user.role.value, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        with unit_of_work(self.session):
            user = self.user_repo.get(user_id)
            if user is None:
                raise NotFoundError(f"user not found: {user_id}")
            if not PWD_CTX.verify(current_password, user.password_hash):
                raise ValidationFailure("current password is incorrect")
            user.password_hash = PWD_CTX.hash(new_password)
            self.session.add(user)


class UserService:
    """Admin management of users and their student/teacher profiles."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.student_repo = repositories.StudentRepository(session)
        self.teacher_repo = repositories.TeacherRepository(session)
        self.catalog_repo = repositories.CatalogRepository(session)
        self.ledger = ProgressLedger(session)

    def create_user(
        self,
        enrollment_number: str,
        first_name: str,
        last_name: str,
        role: models.Role = models.Role.STUDENT,
        course_id: Optional[int] = None,
        specialty: Optional[str] = None,
        password: Optional[str] = None,
    ) -> models.User:
        """Create a user and the profile matching its role.

        The initial password is the enrollment number unless one is given.
        New students start in term 1 with PENDING records for that term.
        """
        with unit_of_work(self.session):
            if self.user_repo.get_by_enrollment_number(enrollment_number):
                raise ConflictError(f"enrollment number already registered: {enrollment_number}")
            if role == models.Role.STUDENT:
                if course_id is None:
                    raise ValidationFailure("course_id is required for the STUDENT role")
                if self.catalog_repo.get_course(course_id) is None:
                    raise NotFoundError(f"course not found: {course_id}")
            user = self.user_repo.add(models.User(
                enrollment_number=enrollment_number,
                first_name=first_name,
                last_name=last_name,
                password_hash=PWD_CTX.hash(password or enrollment_number),
                role=role,
            ))
            if role == models.Role.STUDENT:
                student = self.student_repo.add(models.Student(user_id=user.id, course_id=course_id, term=1))
                self.ledger.initialize_term_records(student.id, course_id, 1)
            elif role == models.Role.TEACHER:
                self.teacher_repo.add(models.Teacher(user_id=user.id, specialty=specialty or ""))
        self.session.refresh(user)
        logger.info("user created id=%s role=%s", user.id, role.value)
        return user

    def update_user(self, user_id: int, **changes) -> models.User:
        with unit_of_work(self.session):
            user = self.user_repo.get(user_id)
            if user is None:
                raise NotFoundError(f"user not found: {user_id}")
            for key, value in changes.items():
                if value is not None:
                    setattr(user, key, value)
            self.session.add(user)
        self.session.refresh(user)
        return user

    def deactivate_user(self, user_id: int) -> None:
        """Soft-delete: progress history stays attached to the profile."""
        with unit_of_work(self.session):
            user = self.user_repo.get(user_id)
            if user is None:
                raise NotFoundError(f"user not found: {user_id}")
            user.is_active = False
            self.session.add(user)

    def update_teacher_profile(self, teacher_id: int, first_name: Optional[str] = None,
                               last_name: Optional[str] = None, specialty: Optional[str] = None) -> models.Teacher:
        """Update a teacher's name and specialty together."""
        with unit_of_work(self.session):
            teacher = self.teacher_repo.get(teacher_id)
            if teacher is None:
                raise NotFoundError(f"teacher not found: {teacher_id}")
            user = self.user_repo.get(teacher.user_id)
            if first_name:
                user.first_name = first_name
            if last_name:
                user.last_name = last_name
            self.session.add(user)
            if specialty:
                teacher.specialty = specialty
                self.session.add(teacher)
        self.session.refresh(teacher)
        return teacher

    def toggle_payment(self, student_id: int) -> models.Student:
        with unit_of_work(self.session):
            student = self.student_repo.get(student_id)
            if student is None:
                raise NotFoundError(f"student not found: {student_id}")
            student.has_paid = not student.has_paid
            self.session.add(student)
        self.session.refresh(student)
        return student


class CatalogService:
    """Courses, subjects with prerequisites and curriculum plan entries."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.CatalogRepository(session)
        self.group_repo = repositories.GroupRepository(session)
        self.student_repo = repositories.StudentRepository(session)
        self.progress_repo = repositories.ProgressRepository(session)

    def create_course(self, name: str, description: str = "", total_terms: Optional[int] = None) -> models.Course:
        with unit_of_work(self.session):
            course = self.repo.add(models.Course(name=name, description=description, total_terms=total_terms))
        self.session.refresh(course)
        return course

    def update_course(self, course_id: int, **changes) -> models.Course:
        with unit_of_work(self.session):
            course = self.repo.get_course(course_id)
            if course is None:
                raise NotFoundError(f"course not found: {course_id}")
            for key, value in changes.items():
                if value is not None:
                    setattr(course, key, value)
            self.session.add(course)
        self.session.refresh(course)
        return course

    def delete_course(self, course_id: int) -> None:
        """Delete a course nothing depends on any more."""
        with unit_of_work(self.session):
            course = self.repo.get_course(course_id)
            if course is None:
                raise NotFoundError(f"course not found: {course_id}")
            planned = self.repo.plan_for_course(course_id)
            if planned:
                raise ConflictError(
                    f"course has dependent subjects: {[entry.subject_id for entry in planned]}"
                )
            if self.group_repo.exists_for(course_id=course_id):
                raise ConflictError("course still has groups")
            if self.student_repo.exists_for_course(course_id):
                raise ConflictError("course still has students")
            self.repo.delete(course)
        logger.info("course deleted id=%s", course_id)

    def create_subject(self, name: str, credits: int, description: str = "",
                       prerequisite_ids: Sequence[int] = ()) -> models.Subject:
        if credits <= 0:
            raise ValidationFailure("credits must be a positive integer")
        with unit_of_work(self.session):
            subject = self.repo.add(models.Subject(name=name, description=description, credits=credits))
            self._set_prerequisites(subject.id, prerequisite_ids)
        self.session.refresh(subject)
        return subject

    def update_subject(self, subject_id: int, name: Optional[str] = None, description: Optional[str] = None,
                       credits: Optional[int] = None, prerequisite_ids: Optional[Sequence[int]] = None) -> models.Subject:
        with unit_of_work(self.session):
            subject = self.repo.get_subject(subject_id)
            if subject is None:
                raise NotFoundError(f"subject not found: {subject_id}")
            if name is not None:
                subject.name = name
            if description is not None:
                subject.description = description
            if credits is not None:
                if credits <= 0:
                    raise ValidationFailure("credits must be a positive integer")
                subject.credits = credits
            self.session.add(subject)
            if prerequisite_ids is not None:
                self._set_prerequisites(subject_id, prerequisite_ids)
        self.session.refresh(subject)
        return subject

    def delete_subject(self, subject_id: int) -> None:
        """Delete a subject that no curriculum, group, dependent or ledger uses."""
        with unit_of_work(self.session):
            subject = self.repo.get_subject(subject_id)
            if subject is None:
                raise NotFoundError(f"subject not found: {subject_id}")
            planned = self.repo.plan_for_subject(subject_id)
            if planned:
                raise ConflictError(
                    f"subject is linked to courses: {[entry.course_id for entry in planned]}"
                )
            if self.group_repo.exists_for(subject_id=subject_id):
                raise ConflictError("subject is offered by a group")
            dependents = self.repo.dependent_ids(subject_id)
            if dependents:
                raise ConflictError(f"subject is required by: {dependents}")
            if self.progress_repo.exists_for_subject(subject_id):
                raise ConflictError("subject has progress history")
            self.repo.replace_prerequisites(subject_id, ())
            self.repo.delete(subject)
        logger.info("subject deleted id=%s", subject_id)

    def _set_prerequisites(self, subject_id: int, prerequisite_ids: Sequence[int]) -> None:
        required = set(prerequisite_ids)
        if subject_id in required:
            raise ValidationFailure("a subject cannot require itself")
        for rid in required:
            if self.repo.get_subject(rid) is None:
                raise NotFoundError(f"prerequisite subject not found: {rid}")
            if self._requires(rid, subject_id):
                raise ValidationFailure(f"prerequisite {rid} would create a cycle with subject {subject_id}")
        self.repo.replace_prerequisites(subject_id, required)

    def _requires(self, start_id: int, target_id: int) -> bool:
        """True if `start_id` transitively requires `target_id`."""
        seen = set()
        stack = [start_id]
        while stack:
            current = stack.pop()
            if current == target_id:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.repo.prerequisite_ids(current))
        return False

    def add_plan_entry(self, course_id: int, subject_id: int, term: int) -> models.CurriculumPlan:
        if term < 1:
            raise ValidationFailure("term must be >= 1")
        with unit_of_work(self.session):
            if self.repo.get_course(course_id) is None:
                raise NotFoundError(f"course not found: {course_id}")
            if self.repo.get_subject(subject_id) is None:
                raise NotFoundError(f"subject not found: {subject_id}")
            if self.repo.find_plan_entry(course_id, subject_id):
                raise ConflictError("this course and subject are already linked")
            entry = self.repo.add(models.CurriculumPlan(course_id=course_id, subject_id=subject_id, term=term))
        self.session.refresh(entry)
        return entry

    def remove_plan_entry(self, plan_id: int) -> None:
        with unit_of_work(self.session):
            entry = self.repo.get_plan_entry(plan_id)
            if entry is None:
                raise NotFoundError(f"curriculum entry not found: {plan_id}")
            self.repo.delete(entry)


class GroupService:
    """Group offerings, weekly schedules and student enrollment."""
    def __init__(self, session: Session):
        self.session = session
        self.group_repo = repositories.GroupRepository(session)
        self.catalog_repo = repositories.CatalogRepository(session)
        self.teacher_repo = repositories.TeacherRepository(session)
        self.student_repo = repositories.StudentRepository(session)
        self.enrollment_repo = repositories.EnrollmentRepository(session)
        self.ledger = ProgressLedger(session)
        self.resolver = EligibilityResolver(session)

    def create_group(self, name: str, course_id: int, subject_id: int, teacher_id: int, term: int,
                     schedules: Sequence[dict] = ()) -> models.Group:
        with unit_of_work(self.session):
            if self.catalog_repo.get_course(course_id) is None:
                raise NotFoundError(f"course not found: {course_id}")
            if self.catalog_repo.get_subject(subject_id) is None:
                raise NotFoundError(f"subject not found: {subject_id}")
            if self.teacher_repo.get(teacher_id) is None:
                raise NotFoundError(f"teacher not found: {teacher_id}")
            group = self.group_repo.add(models.Group(
                name=name, course_id=course_id, subject_id=subject_id, teacher_id=teacher_id, term=term,
            ))
            for slot in schedules:
                self._add_schedule(group.id, slot["day"], slot["start_time"], slot["end_time"])
        self.session.refresh(group)
        return group

    def update_group(self, group_id: int, name: Optional[str] = None, teacher_id: Optional[int] = None,
                     term: Optional[int] = None) -> models.Group:
        with unit_of_work(self.session):
            group = self.group_repo.get(group_id)
            if group is None:
                raise NotFoundError(f"group not found: {group_id}")
            if teacher_id is not None:
                if self.teacher_repo.get(teacher_id) is None:
                    raise NotFoundError(f"teacher not found: {teacher_id}")
                group.teacher_id = teacher_id
            if name is not None:
                group.name = name
            if term is not None:
                group.term = term
            self.session.add(group)
        self.session.refresh(group)
        return group

    def delete_group(self, group_id: int) -> None:
        """Delete a group without enrollments, together with its schedules."""
        with unit_of_work(self.session):
            group = self.group_repo.get(group_id)
            if group is None:
                raise NotFoundError(f"group not found: {group_id}")
            if self.enrollment_repo.list_for_group(group_id):
                raise ConflictError("group still has enrolled students")
            for slot in self.group_repo.schedules_for(group_id):
                self.group_repo.delete(slot)
            self.group_repo.delete(group)
        logger.info("group deleted id=%s", group_id)

    def add_schedule(self, group_id: int, day: models.Weekday, start_time: str, end_time: str) -> models.GroupSchedule:
        with unit_of_work(self.session):
            if self.group_repo.get(group_id) is None:
                raise NotFoundError(f"group not found: {group_id}")
            slot = self._add_schedule(group_id, day, start_time, end_time)
        self.session.refresh(slot)
        return slot

    def list_schedules(self, group_id: int) -> List[models.GroupSchedule]:
        """Weekly slots of a group ordered by weekday, then start time."""
        if self.group_repo.get(group_id) is None:
            raise NotFoundError(f"group not found: {group_id}")
        weekdays = list(models.Weekday)
        return sorted(
            self.group_repo.schedules_for(group_id),
            key=lambda slot: (weekdays.index(slot.day), minutes_of(slot.start_time)),
        )

    def update_schedule(self, schedule_id: int, day: Optional[models.Weekday] = None,
                        start_time: Optional[str] = None, end_time: Optional[str] = None) -> models.GroupSchedule:
        """Move a slot; the merged slot is validated like a new one."""
        with unit_of_work(self.session):
            slot = self.group_repo.get_schedule(schedule_id)
            if slot is None:
                raise NotFoundError(f"schedule not found: {schedule_id}")
            day = models.Weekday(day or slot.day)
            start_time = start_time or slot.start_time
            end_time = end_time or slot.end_time
            self._check_slot(slot.group_id, day, start_time, end_time, exclude_id=slot.id)
            slot.day = day
            slot.start_time = start_time
            slot.end_time = end_time
            self.session.add(slot)
        self.session.refresh(slot)
        return slot

    def delete_schedule(self, schedule_id: int) -> None:
        with unit_of_work(self.session):
            slot = self.group_repo.get_schedule(schedule_id)
            if slot is None:
                raise NotFoundError(f"schedule not found: {schedule_id}")
            self.group_repo.delete(slot)

    def _add_schedule(self, group_id: int, day, start_time: str, end_time: str) -> models.GroupSchedule:
        day = models.Weekday(day)
        self._check_slot(group_id, day, start_time, end_time)
        return self.group_repo.add(models.GroupSchedule(
            group_id=group_id, day=day, start_time=start_time, end_time=end_time,
        ))

    def _check_slot(self, group_id: int, day: models.Weekday, start_time: str, end_time: str,
                    exclude_id: Optional[int] = None) -> None:
        start, end = minutes_of(start_time), minutes_of(end_time)
        if end <= start:
            raise ValidationFailure("end_time must be later than start_time")
        for existing in self.group_repo.schedules_for(group_id, day):
            if existing.id == exclude_id:
                continue
            if start < minutes_of(existing.end_time) and minutes_of(existing.start_time) < end:
                raise ConflictError(
                    f"schedule overlaps {existing.day.value} {existing.start_time}-{existing.end_time}"
                )

    def enroll(self, group_id: int, student_id: int) -> models.Enrollment:
        """Add a student to a group once prerequisites are satisfied."""
        with unit_of_work(self.session):
            group = self.group_repo.get(group_id)
            if group is None:
                raise NotFoundError(f"group not found: {group_id}")
            if self.student_repo.get(student_id) is None:
                raise NotFoundError(f"student not found: {student_id}")
            if self.enrollment_repo.get(student_id, group_id):
                raise ConflictError("student is already enrolled in this group")
            missing = self.resolver.missing_prerequisites(student_id, group.subject_id)
            if missing:
                raise ForbiddenError(f"prerequisites not passed: {missing}")
            enrollment = self.enrollment_repo.add(models.Enrollment(student_id=student_id, group_id=group_id))
            self.ledger.mark_in_progress(student_id, group.subject_id)
        self.session.refresh(enrollment)
        return enrollment


class GradingService:
    """Teacher grade submission: enrollment, ledger and advancement in one step."""
    def __init__(self, session: Session):
        self.session = session
        self.group_repo = repositories.GroupRepository(session)
        self.enrollment_repo = repositories.EnrollmentRepository(session)
        self.student_repo = repositories.StudentRepository(session)
        self.system = SystemStateService(session)
        self.ledger = ProgressLedger(session)
        self.controller = AdvancementController(session, ledger=self.ledger)

    def owned_group(self, group_id: int, teacher_id: int) -> models.Group:
        group = self.group_repo.get(group_id)
        if group is None:
            raise NotFoundError(f"group not found: {group_id}")
        if group.teacher_id != teacher_id:
            raise ForbiddenError("not authorized to modify this group")
        return group

    def get_grade(self, teacher_id: int, group_id: int, student_id: int) -> models.Enrollment:
        self.owned_group(group_id, teacher_id)
        enrollment = self.enrollment_repo.get(student_id, group_id)
        if enrollment is None:
            raise NotFoundError("enrollment not found")
        return enrollment

    def submit_grade(self, teacher_id: int, group_id: int, student_id: int, grade: float,
                     actor_user_id: Optional[int] = None) -> dict:
        """Finalize a student's grade in a group.

        Validation, mode and ownership checks run before any write. The
        enrollment update, the ledger upsert and the advancement check are
        then committed together.
        """
        grade = validate_grade(grade)
        self.system.ensure_active()
        group = self.owned_group(group_id, teacher_id)
        enrollment = self.enrollment_repo.get(student_id, group_id)
        if enrollment is None:
            raise NotFoundError("enrollment not found")

        with unit_of_work(self.session):
            enrollment.grade = grade
            enrollment.is_active = False
            enrollment.completed_at = datetime.now(timezone.utc)
            self.session.add(enrollment)
            self.session.flush()
            record = self.ledger.record_grade(
                student_id, group.subject_id, grade,
                source=models.GradeSource.TEACHER,
                enrollment_id=enrollment.id,
                actor_user_id=actor_user_id,
            )
            student = self.student_repo.get(student_id)
            advanced = False
            if student.course_id is not None:
                advanced = self.controller.evaluate_and_advance(student_id, student.course_id)
        self.session.refresh(enrollment)
        self.session.refresh(record)
        self.session.refresh(student)
        return {
            "enrollment_id": enrollment.id,
            "group_id": group_id,
            "student_id": student_id,
            "grade": enrollment.grade,
            "is_active": enrollment.is_active,
            "status": record.status.value,
            "term": student.term,
            "advanced": advanced,
        }


def progress_by_term(session: Session, student: models.Student) -> List[dict]:
    """Group a student's ledger by the curriculum term of each subject.

    Subjects outside the student's course plan are listed under term 0.
    """
    catalog_repo = repositories.CatalogRepository(session)
    terms = {}
    if student.course_id is not None:
        terms = {e.subject_id: e.term for e in catalog_repo.plan_for_course(student.course_id)}
    grouped = {}
    for record in ProgressLedger(session).records_for(student.id):
        subject = catalog_repo.get_subject(record.subject_id)
        grouped.setdefault(terms.get(record.subject_id, 0), []).append({
            "subject_id": record.subject_id,
            "subject": subject.name if subject else None,
            "credits": subject.credits if subject else None,
            "status": record.status.value,
            "grade": record.grade,
            "completed_at": record.completed_at,
        })
    return [{"term": term, "subjects": grouped[term]} for term in sorted(grouped)]


def current_subjects(session: Session, student: models.Student) -> List[dict]:
    """Subjects the student is taking now, with group, teacher and weekly slots."""
    group_repo = repositories.GroupRepository(session)
    catalog_repo = repositories.CatalogRepository(session)
    teacher_repo = repositories.TeacherRepository(session)
    user_repo = repositories.UserRepository(session)
    out = []
    for enrollment in repositories.EnrollmentRepository(session).active_for_student(student.id):
        group = group_repo.get(enrollment.group_id)
        subject = catalog_repo.get_subject(group.subject_id)
        teacher_user = user_repo.get(teacher_repo.get(group.teacher_id).user_id)
        out.append({
            "group_id": group.id,
            "group": group.name,
            "teacher": f"{teacher_user.first_name} {teacher_user.last_name}",
            "subject_id": subject.id,
            "subject": subject.name,
            "description": subject.description,
            "credits": subject.credits,
            "schedules": [
                {"day": slot.day.value, "start_time": slot.start_time, "end_time": slot.end_time}
                for slot in GroupService(session).list_schedules(group.id)
            ],
        })
    return out


def progress_compared(session: Session, student: models.Student) -> List[dict]:
    """The ledger with subjects of active enrollments reported as IN_PROGRESS."""
    group_repo = repositories.GroupRepository(session)
    catalog_repo = repositories.CatalogRepository(session)
    taking = {
        group_repo.get(e.group_id).subject_id
        for e in repositories.EnrollmentRepository(session).active_for_student(student.id)
    }
    terms = {}
    if student.course_id is not None:
        terms = {e.subject_id: e.term for e in catalog_repo.plan_for_course(student.course_id)}
    out = []
    for record in ProgressLedger(session).records_for(student.id):
        subject = catalog_repo.get_subject(record.subject_id)
        status = models.ProgressStatus.IN_PROGRESS if record.subject_id in taking else record.status
        out.append({
            "subject_id": record.subject_id,
            "subject": subject.name,
            "credits": subject.credits,
            "status": status.value,
            "grade": record.grade,
            "completed_at": record.completed_at,
            "term": terms.get(record.subject_id),
        })
    return out


def catalog_counts(session: Session) -> dict:
    user_repo = repositories.UserRepository(session)
    return {
        "students": user_repo.count_by_role(models.Role.STUDENT),
        "teachers": user_repo.count_by_role(models.Role.TEACHER),
        "courses": repositories.CatalogRepository(session).count_courses(),
    }
