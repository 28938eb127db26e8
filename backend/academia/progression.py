"""Academic progression engine.

The engine is split into small collaborators that all work on the same
`Session` and never commit on their own:

- `ProgressLedger` keeps one `ProgressRecord` per student and subject and
  turns grades into PASSED/FAILED outcomes.
- `EligibilityResolver` answers prerequisite questions from the ledger.
- `AdvancementController` moves a single student to the next term once the
  required subjects of the current term are passed.
- `TermCloseOrchestrator` finalizes every open enrollment, syncs the ledger
  and advances the whole cohort inside one unit of work.
- `SystemStateService` guards grade mutations behind the ACTIVE mode.

Callers that mutate state wrap the calls in `database.unit_of_work` so
that each HTTP action is applied atomically or not at all.
"""

import json
import logging
import math
from datetime import datetime, timezone
from typing import List, Optional

from sqlmodel import Session

from . import models, repositories
from .config import settings
from .database import unit_of_work
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailure
from .schemas import TermCloseResult

logger = logging.getLogger("academia.progression")


def _log_event(name: str, **fields) -> None:
    logger.info("%s %s", name, json.dumps(fields, ensure_ascii=True, default=str))


def status_for_grade(grade: float) -> models.ProgressStatus:
    """Map a 0-10 grade to PASSED or FAILED using the configured threshold."""
    if grade >= settings.PASSING_GRADE:
        return models.ProgressStatus.PASSED
    return models.ProgressStatus.FAILED


def validate_grade(grade) -> float:
    """Return `grade` as a float or raise `ValidationFailure` when outside [0, 10]."""
    try:
        value = float(grade)
    except (TypeError, ValueError):
        raise ValidationFailure("grade must be a number")
    if math.isnan(value) or not 0 <= value <= 10:
        raise ValidationFailure("grade must be between 0 and 10")
    return value


class ProgressLedger:
    """Durable record of subject completion per student."""
    def __init__(self, session: Session):
        self.session = session
        self.progress_repo = repositories.ProgressRepository(session)
        self.catalog_repo = repositories.CatalogRepository(session)

    def record_grade(
        self,
        student_id: int,
        subject_id: int,
        grade: float,
        source: models.GradeSource = models.GradeSource.TEACHER,
        enrollment_id: Optional[int] = None,
        actor_user_id: Optional[int] = None,
    ) -> models.ProgressRecord:
        """Upsert the ledger entry for (student, subject) with a final grade.

        The status becomes PASSED when `grade` reaches the passing grade and
        FAILED otherwise; `completed_at` is stamped with the current time.
        Re-recording the same grade leaves the record in the same state.
        A different grade overwrites the previous one (last write wins) and
        both values are kept in the `GradeAudit` trail.
        """
        grade = validate_grade(grade)
        status = status_for_grade(grade)
        now = datetime.now(timezone.utc)

        record, _ = self.progress_repo.get_or_create(student_id, subject_id)
        previous = record.grade
        record.status = status
        record.grade = grade
        record.completed_at = now
        self.progress_repo.save(record)

        self.progress_repo.add_audit(models.GradeAudit(
            student_id=student_id,
            subject_id=subject_id,
            enrollment_id=enrollment_id,
            previous_grade=previous,
            new_grade=grade,
            source=source,
            actor_user_id=actor_user_id,
        ))
        _log_event(
            "grade_recorded",
            student_id=student_id,
            subject_id=subject_id,
            grade=grade,
            previous_grade=previous,
            status=status.value,
            source=source.value,
        )
        return record

    def initialize_term_records(self, student_id: int, course_id: int, term: int) -> List[models.ProgressRecord]:
        """Create PENDING records for every subject planned in `term` of `course_id`.

        Subjects that already have a record for the student are skipped, so
        the call is idempotent and never overwrites in-progress work.
        Returns the newly created records.
        """
        created = []
        for entry in self.catalog_repo.plan_for_term(course_id, term):
            record, inserted = self.progress_repo.get_or_create(student_id, entry.subject_id)
            if inserted:
                created.append(record)
        return created

    def mark_in_progress(self, student_id: int, subject_id: int) -> models.ProgressRecord:
        """Flag a subject as being taken; PASSED records are left untouched."""
        record, _ = self.progress_repo.get_or_create(student_id, subject_id)
        if record.status != models.ProgressStatus.PASSED:
            record.status = models.ProgressStatus.IN_PROGRESS
        return self.progress_repo.save(record)

    def records_for(self, student_id: int) -> List[models.ProgressRecord]:
        return self.progress_repo.list_for_student(student_id)


class EligibilityResolver:
    """Decide whether a student may take a subject given its prerequisites."""
    def __init__(self, session: Session):
        self.session = session
        self.catalog_repo = repositories.CatalogRepository(session)
        self.student_repo = repositories.StudentRepository(session)
        self.group_repo = repositories.GroupRepository(session)
        self.progress_repo = repositories.ProgressRepository(session)

    def _require_student(self, student_id: int) -> models.Student:
        student = self.student_repo.get(student_id)
        if student is None:
            raise NotFoundError(f"student not found: {student_id}")
        return student

    def is_eligible(self, student_id: int, subject_id: int) -> bool:
        """True iff every prerequisite of the subject is PASSED for the student.

        Subjects without prerequisites are always eligible. A missing
        student or subject raises `NotFoundError`.
        """
        self._require_student(student_id)
        if self.catalog_repo.get_subject(subject_id) is None:
            raise NotFoundError(f"subject not found: {subject_id}")
        required = self.catalog_repo.prerequisite_ids(subject_id)
        if not required:
            return True
        passed = self.progress_repo.passed_subject_ids(student_id)
        return all(rid in passed for rid in required)

    def missing_prerequisites(self, student_id: int, subject_id: int) -> List[int]:
        """Return prerequisite subject ids that are not yet PASSED."""
        self._require_student(student_id)
        if self.catalog_repo.get_subject(subject_id) is None:
            raise NotFoundError(f"subject not found: {subject_id}")
        passed = self.progress_repo.passed_subject_ids(student_id)
        return [rid for rid in self.catalog_repo.prerequisite_ids(subject_id) if rid not in passed]

    def available_subjects_for_next_term(self, student_id: int) -> List[models.Subject]:
        """Subjects offered in the student's next term that they may enroll in.

        Candidates are the distinct subjects of any group for the student's
        course in term + 1, returned in catalog (subject id) order.
        """
        student = self._require_student(student_id)
        if student.course_id is None:
            return []
        target_term = student.term + 1
        out = []
        for subject_id in self.group_repo.subject_ids_offered(student.course_id, target_term):
            if self.is_eligible(student_id, subject_id):
                out.append(self.catalog_repo.get_subject(subject_id))
        return out


class AdvancementController:
    """Per-student rule that applies the term increment."""
    def __init__(self, session: Session, ledger: Optional[ProgressLedger] = None):
        self.session = session
        self.ledger = ledger or ProgressLedger(session)
        self.student_repo = repositories.StudentRepository(session)
        self.catalog_repo = repositories.CatalogRepository(session)
        self.progress_repo = repositories.ProgressRepository(session)

    def evaluate_and_advance(self, student_id: int, course_id: int) -> bool:
        """Advance the student one term if the current term's plan is complete.

        Returns True when this call moved the student forward. A term with
        no curriculum entries never triggers advancement. When the course
        defines `total_terms` the counter stops there and completing the
        final term marks the student graduated instead.
        """
        student = self.student_repo.get(student_id)
        if student is None:
            raise NotFoundError(f"student not found: {student_id}")
        course = self.catalog_repo.get_course(course_id)
        if course is None:
            raise NotFoundError(f"course not found: {course_id}")
        if student.graduated:
            return False

        current_term = student.term
        required = {entry.subject_id for entry in self.catalog_repo.plan_for_term(course_id, current_term)}
        if not required:
            return False
        passed = self.progress_repo.passed_subject_ids(student_id)
        matched = len(required & passed)
        if matched != len(required):
            return False

        if course.total_terms is not None and current_term >= course.total_terms:
            if self.student_repo.mark_graduated(student_id):
                _log_event("student_graduated", student_id=student_id, course_id=course_id, term=current_term)
            return False

        if not self.student_repo.advance_term(student_id, current_term):
            logger.info("advance skipped for student %s: term changed concurrently", student_id)
            return False
        self.session.refresh(student)
        self.ledger.initialize_term_records(student_id, course_id, current_term + 1)
        _log_event("student_advanced", student_id=student_id, course_id=course_id,
                   from_term=current_term, to_term=current_term + 1)
        return True


class TermCloseOrchestrator:
    """Close an academic term for the whole student population."""
    def __init__(self, session: Session):
        self.session = session
        self.ledger = ProgressLedger(session)
        self.controller = AdvancementController(session, ledger=self.ledger)
        self.enrollment_repo = repositories.EnrollmentRepository(session)
        self.group_repo = repositories.GroupRepository(session)
        self.student_repo = repositories.StudentRepository(session)
        self.system = SystemStateService(session)

    def close_term(self, actor_user_id: Optional[int] = None) -> TermCloseResult:
        """Finalize stragglers, sync the ledger and advance the cohort.

        Rejected with `ForbiddenError` while the system is in MAINTENANCE.
        The three steps run in this order inside one unit of work; if any of
        them fails nothing is applied. Running it again right away is
        harmless because no active enrollment is left behind.
        """
        self.system.ensure_active()
        with unit_of_work(self.session):
            now = datetime.now(timezone.utc)

            stragglers = self.enrollment_repo.active_ungraded()
            for enrollment in stragglers:
                enrollment.grade = 0.0
                enrollment.is_active = False
                enrollment.completed_at = now
                self.session.add(enrollment)
            self.session.flush()

            to_sync = list(stragglers) + list(self.enrollment_repo.active_graded())
            for enrollment in to_sync:
                group = self.group_repo.get(enrollment.group_id)
                self.ledger.record_grade(
                    enrollment.student_id,
                    group.subject_id,
                    enrollment.grade,
                    source=models.GradeSource.TERM_CLOSE,
                    enrollment_id=enrollment.id,
                    actor_user_id=actor_user_id,
                )
                if enrollment.is_active:
                    enrollment.is_active = False
                    enrollment.completed_at = enrollment.completed_at or now
                    self.session.add(enrollment)
            self.session.flush()

            advanced = 0
            for student in self.student_repo.list_all():
                if student.course_id is None:
                    continue
                if self.controller.evaluate_and_advance(student.id, student.course_id):
                    advanced += 1

        result = TermCloseResult(
            message="Quarter ended successfully",
            students_advanced=advanced,
            quarter_closed=True,
            enrollments_finalized=len(stragglers),
            records_synced=len(to_sync),
        )
        _log_event("term_closed", **result.model_dump())
        return result


class SystemStateService:
    """Read and change the singleton operational mode."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.SystemStateRepository(session)

    def get(self) -> models.SystemState:
        """Return the state row, creating and committing it as ACTIVE on first use."""
        state = self.repo.get()
        if state is None:
            with unit_of_work(self.session):
                state = self._load_or_create()
            self.session.refresh(state)
        return state

    def _load_or_create(self) -> models.SystemState:
        state = self.repo.get()
        if state is None:
            state = self.repo.save(models.SystemState(id=repositories.SystemStateRepository.SINGLETON_ID))
        return state

    def is_active(self) -> bool:
        state = self.repo.get()
        return state is None or state.mode == models.SystemMode.ACTIVE

    def ensure_active(self) -> None:
        if not self.is_active():
            raise ForbiddenError("system is not active for grade modifications")

    def set_maintenance(self, maintenance: bool, expected_mode: Optional[models.SystemMode] = None) -> models.SystemState:
        """Switch between ACTIVE and MAINTENANCE.

        When `expected_mode` is given the switch only happens if the stored
        mode still matches it; otherwise `ConflictError` is raised.
        """
        new_mode = models.SystemMode.MAINTENANCE if maintenance else models.SystemMode.ACTIVE
        with unit_of_work(self.session):
            state = self._load_or_create()
            if expected_mode is not None and state.mode != expected_mode:
                raise ConflictError(f"system state is {state.mode.value}, expected {expected_mode.value}")
            state.mode = new_mode
            state.updated_at = datetime.now(timezone.utc)
            self.repo.save(state)
        _log_event("system_state_changed", mode=new_mode.value)
        return state
