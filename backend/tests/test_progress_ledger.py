import pytest
from sqlmodel import Session, select

from academia import models
from academia.errors import ValidationFailure
from academia.progression import ProgressLedger
from academia.repositories import ProgressRepository


@pytest.mark.parametrize("grade,expected", [
    (0, models.ProgressStatus.FAILED),
    (5, models.ProgressStatus.FAILED),
    (5.99, models.ProgressStatus.FAILED),
    (6, models.ProgressStatus.PASSED),
    (7.5, models.ProgressStatus.PASSED),
    (10, models.ProgressStatus.PASSED),
])
def test_record_grade_sets_status_from_threshold(session, seed, grade, expected):
    course = seed.course()
    student = seed.student(course)
    subject = seed.subject("Algebra")
    record = ProgressLedger(session).record_grade(student.id, subject.id, grade)
    assert record.status == expected
    assert record.grade == grade
    assert record.completed_at is not None


@pytest.mark.parametrize("grade", [-0.5, 10.5, "abc", None])
def test_record_grade_rejects_out_of_range(session, seed, grade):
    student = seed.student(seed.course())
    subject = seed.subject("Algebra")
    with pytest.raises(ValidationFailure):
        ProgressLedger(session).record_grade(student.id, subject.id, grade)


def test_record_grade_upserts_single_record(session, seed):
    student = seed.student(seed.course())
    subject = seed.subject("Algebra")
    ledger = ProgressLedger(session)
    ledger.record_grade(student.id, subject.id, 8)
    ledger.record_grade(student.id, subject.id, 8)
    rows = session.exec(select(models.ProgressRecord).where(models.ProgressRecord.student_id == student.id)).all()
    assert len(rows) == 1
    assert rows[0].status == models.ProgressStatus.PASSED
    assert rows[0].grade == 8


def test_second_grade_overwrites_and_is_audited(session, seed):
    student = seed.student(seed.course())
    subject = seed.subject("Algebra")
    ledger = ProgressLedger(session)
    ledger.record_grade(student.id, subject.id, 9)
    record = ledger.record_grade(student.id, subject.id, 4)
    assert record.status == models.ProgressStatus.FAILED
    assert record.grade == 4
    audits = ledger.progress_repo.audits_for(student.id, subject.id)
    assert [(a.previous_grade, a.new_grade) for a in audits] == [(None, 9), (9, 4)]


def test_initialize_term_records_is_idempotent(session, seed):
    course = seed.course()
    student = seed.student(course)
    algebra = seed.subject("Algebra")
    physics = seed.subject("Physics")
    seed.plan(course, algebra, 1)
    seed.plan(course, physics, 1)
    seed.progress(student, physics, status=models.ProgressStatus.IN_PROGRESS, grade=None)

    ledger = ProgressLedger(session)
    created = ledger.initialize_term_records(student.id, course.id, 1)
    assert [r.subject_id for r in created] == [algebra.id]
    again = ledger.initialize_term_records(student.id, course.id, 1)
    assert again == []

    records = {r.subject_id: r for r in ledger.records_for(student.id)}
    assert len(records) == 2
    assert records[algebra.id].status == models.ProgressStatus.PENDING
    assert records[physics.id].status == models.ProgressStatus.IN_PROGRESS


def test_initialize_term_records_without_plan_creates_nothing(session, seed):
    course = seed.course()
    student = seed.student(course)
    assert ProgressLedger(session).initialize_term_records(student.id, course.id, 4) == []


def test_mark_in_progress_keeps_passed_records(session, seed):
    student = seed.student(seed.course())
    passed = seed.subject("Algebra")
    failed = seed.subject("Physics")
    seed.progress(student, passed, status=models.ProgressStatus.PASSED, grade=9)
    seed.progress(student, failed, status=models.ProgressStatus.FAILED, grade=3)

    ledger = ProgressLedger(session)
    assert ledger.mark_in_progress(student.id, passed.id).status == models.ProgressStatus.PASSED
    assert ledger.mark_in_progress(student.id, failed.id).status == models.ProgressStatus.IN_PROGRESS


def test_record_grade_updates_row_inserted_after_lookup(engine, session, seed, monkeypatch):
    student = seed.student(seed.course())
    subject = seed.subject("Algebra")
    # another writer commits the row after this session looked and found nothing
    with Session(engine) as other:
        other.add(models.ProgressRecord(
            student_id=student.id, subject_id=subject.id, status=models.ProgressStatus.IN_PROGRESS,
        ))
        other.commit()
    real_get = ProgressRepository.get
    lookups = []

    def stale_get(self, student_id, subject_id):
        lookups.append(subject_id)
        if len(lookups) == 1:
            return None
        return real_get(self, student_id, subject_id)

    monkeypatch.setattr(ProgressRepository, "get", stale_get)
    record = ProgressLedger(session).record_grade(student.id, subject.id, 7)
    session.commit()

    assert record.status == models.ProgressStatus.PASSED
    with Session(engine) as fresh:
        rows = fresh.exec(select(models.ProgressRecord).where(models.ProgressRecord.student_id == student.id)).all()
        assert [(r.subject_id, r.status, r.grade) for r in rows] == [(subject.id, models.ProgressStatus.PASSED, 7)]


def test_get_or_create_reports_insertion(session, seed):
    student = seed.student(seed.course())
    subject = seed.subject("Algebra")
    repo = ProgressRepository(session)
    first, created = repo.get_or_create(student.id, subject.id)
    again, created_again = repo.get_or_create(student.id, subject.id)
    assert created is True
    assert created_again is False
    assert first.id == again.id
    assert first.status == models.ProgressStatus.PENDING
