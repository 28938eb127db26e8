"""FastAPI application entrypoint and HTTP controllers.

Controllers are intentionally thin: they accept requests, delegate to
services or the progression engine, and return JSON responses. Domain
errors raised below are turned into distinct status codes by the
exception handlers registered here.

Endpoints implemented:
- POST /api/auth/login, POST /api/auth/change-password, GET /api/auth/profile
- /api/admin/users (create, update, deactivate, listings, toggle payment)
- /api/courses, /api/subjects (CRUD), /api/admin/curriculum, /api/stats
- /api/admin/groups, /api/admin/schedules (CRUD, enrollments)
- /api/admin/system (end-quarter, state)
- /api/teachers (profile, groups, grade read/submit)
- /api/students (progress, current subjects, grades, available subjects, eligibility)
"""

import json
import logging
import time
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from . import models, repositories, services
from .auth import current_student, current_teacher, get_current_user, require_admin
from .config import settings
from .database import create_db_and_tables, get_session
from .errors import DomainError
from .progression import EligibilityResolver, SystemStateService, TermCloseOrchestrator
from .schemas import (
    ChangePasswordIn,
    CourseIn,
    CourseUpdate,
    CurriculumIn,
    EnrollmentIn,
    GradeIn,
    GroupIn,
    GroupUpdate,
    LoginIn,
    ScheduleIn,
    ScheduleUpdate,
    SubjectIn,
    SubjectUpdate,
    SystemStateIn,
    TeacherProfileUpdate,
    UserCreate,
    UserUpdate,
)

app = FastAPI(title="Academic Progression API")
logger = logging.getLogger("academia.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if request.url.path.startswith("/api"):
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
    return response


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "error": exc.code})


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning("integrity error on %s: %s", request.url.path, exc.orig)
    return JSONResponse(status_code=409, content={"detail": "a record with this value already exists", "error": "conflict"})


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"detail": "internal server error", "error": "internal"})


def _user_out(user: models.User, profile=None) -> dict:
    out = {
        "id": user.id,
        "enrollment_number": user.enrollment_number,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "role": user.role.value,
        "is_active": user.is_active,
    }
    if isinstance(profile, models.Student):
        out["student"] = _student_out(profile)
    elif isinstance(profile, models.Teacher):
        out["teacher"] = {"id": profile.id, "specialty": profile.specialty}
    return out


def _profile_for(db: Session, user: models.User):
    if user.role == models.Role.STUDENT:
        return repositories.StudentRepository(db).get_by_user(user.id)
    if user.role == models.Role.TEACHER:
        return repositories.TeacherRepository(db).get_by_user(user.id)
    return None


def _student_out(student: models.Student) -> dict:
    return {
        "id": student.id,
        "user_id": student.user_id,
        "course_id": student.course_id,
        "term": student.term,
        "has_paid": student.has_paid,
        "graduated": student.graduated,
    }


def _subject_out(db: Session, subject: models.Subject) -> dict:
    return {
        "id": subject.id,
        "name": subject.name,
        "description": subject.description,
        "credits": subject.credits,
        "prerequisite_ids": repositories.CatalogRepository(db).prerequisite_ids(subject.id),
    }


def _course_out(course: models.Course) -> dict:
    return {"id": course.id, "name": course.name, "description": course.description, "total_terms": course.total_terms}


def _plan_out(entry: models.CurriculumPlan) -> dict:
    return {"id": entry.id, "course_id": entry.course_id, "subject_id": entry.subject_id, "term": entry.term}


def _schedule_out(slot: models.GroupSchedule) -> dict:
    return {"id": slot.id, "day": slot.day.value, "start_time": slot.start_time, "end_time": slot.end_time}


def _group_out(db: Session, group: models.Group) -> dict:
    return {
        "id": group.id,
        "name": group.name,
        "course_id": group.course_id,
        "subject_id": group.subject_id,
        "teacher_id": group.teacher_id,
        "term": group.term,
        "schedules": [_schedule_out(s) for s in repositories.GroupRepository(db).schedules_for(group.id)],
    }


def _enrollment_out(enrollment: models.Enrollment) -> dict:
    return {
        "id": enrollment.id,
        "student_id": enrollment.student_id,
        "group_id": enrollment.group_id,
        "grade": enrollment.grade,
        "is_active": enrollment.is_active,
        "completed_at": enrollment.completed_at,
    }


def _state_out(state: models.SystemState) -> dict:
    return {"mode": state.mode.value, "updated_at": state.updated_at}


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


@app.post('/api/auth/login')
def login(payload: LoginIn, db: Session = Depends(get_session)):
    """Authenticate with enrollment number and password; returns a JWT."""
    result = services.AuthService(db).authenticate(payload.enrollment_number, payload.password)
    if not result:
        raise HTTPException(status_code=401, detail='invalid credentials')
    token, user = result
    return {'access_token': token, 'role': user.role.value, 'user': _user_out(user)}


@app.post('/api/auth/change-password')
def change_password(payload: ChangePasswordIn, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    services.AuthService(db).change_password(user.id, payload.current_password, payload.new_password)
    return {'message': 'password updated'}


@app.get('/api/auth/profile')
def auth_profile(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return _user_out(user, _profile_for(db, user))


@app.get('/api/stats')
def stats(db: Session = Depends(get_session)):
    """Public counts of active students, active teachers and courses."""
    return services.catalog_counts(db)


@app.post('/api/admin/users', status_code=201)
def create_user(payload: UserCreate, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    """Create a user; the enrollment number doubles as the initial password."""
    user = services.UserService(db).create_user(
        payload.enrollment_number, payload.first_name, payload.last_name,
        role=payload.role, course_id=payload.course_id, specialty=payload.specialty,
    )
    return _user_out(user, _profile_for(db, user))


@app.patch('/api/admin/users/{user_id}')
def update_user(user_id: int, payload: UserUpdate, db: Session = Depends(get_session),
                admin: models.User = Depends(require_admin)):
    user = services.UserService(db).update_user(user_id, **payload.model_dump(exclude_unset=True))
    return _user_out(user)


@app.delete('/api/admin/users/{user_id}')
def delete_user(user_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    """Deactivate a user. Profiles and progress history are kept."""
    services.UserService(db).deactivate_user(user_id)
    return {'message': 'user deactivated'}


@app.get('/api/admin/users/students')
def list_students(db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    student_repo = repositories.StudentRepository(db)
    out = []
    for user in repositories.UserRepository(db).list_by_role(models.Role.STUDENT):
        out.append(_user_out(user, student_repo.get_by_user(user.id)))
    return out


@app.get('/api/admin/users/teachers')
def list_teachers(db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    teacher_repo = repositories.TeacherRepository(db)
    return [_user_out(u, teacher_repo.get_by_user(u.id))
            for u in repositories.UserRepository(db).list_by_role(models.Role.TEACHER)]


@app.get('/api/admin/users/courses/{course_id}/students')
def list_course_students(course_id: int, term: Optional[int] = None, db: Session = Depends(get_session),
                         admin: models.User = Depends(require_admin)):
    """Students of a course, optionally restricted to one term."""
    return [_student_out(s) for s in repositories.StudentRepository(db).list_by_course(course_id, term)]


@app.post('/api/admin/users/students/{student_id}/toggle-payment')
def toggle_payment(student_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    return _student_out(services.UserService(db).toggle_payment(student_id))


@app.get('/api/courses')
def list_courses(db: Session = Depends(get_session)):
    return [_course_out(c) for c in repositories.CatalogRepository(db).list_courses()]


@app.post('/api/courses', status_code=201)
def create_course(payload: CourseIn, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    return _course_out(services.CatalogService(db).create_course(payload.name, payload.description, payload.total_terms))


@app.patch('/api/courses/{course_id}')
def update_course(course_id: int, payload: CourseUpdate, db: Session = Depends(get_session),
                  admin: models.User = Depends(require_admin)):
    return _course_out(services.CatalogService(db).update_course(course_id, **payload.model_dump(exclude_unset=True)))


@app.delete('/api/courses/{course_id}')
def delete_course(course_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    """Delete a course; rejected with 409 while subjects, groups or students depend on it."""
    services.CatalogService(db).delete_course(course_id)
    return {'message': 'course deleted'}


@app.get('/api/courses/{course_id}/curriculum')
def course_curriculum(course_id: int, db: Session = Depends(get_session)):
    return [_plan_out(e) for e in repositories.CatalogRepository(db).plan_for_course(course_id)]


@app.get('/api/subjects')
def list_subjects(db: Session = Depends(get_session)):
    return [_subject_out(db, s) for s in repositories.CatalogRepository(db).list_subjects()]


@app.post('/api/subjects', status_code=201)
def create_subject(payload: SubjectIn, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    subject = services.CatalogService(db).create_subject(
        payload.name, payload.credits, payload.description, payload.prerequisite_ids,
    )
    return _subject_out(db, subject)


@app.patch('/api/subjects/{subject_id}')
def update_subject(subject_id: int, payload: SubjectUpdate, db: Session = Depends(get_session),
                   admin: models.User = Depends(require_admin)):
    subject = services.CatalogService(db).update_subject(subject_id, **payload.model_dump(exclude_unset=True))
    return _subject_out(db, subject)


@app.delete('/api/subjects/{subject_id}')
def delete_subject(subject_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    services.CatalogService(db).delete_subject(subject_id)
    return {'message': 'subject deleted'}


@app.post('/api/admin/curriculum', status_code=201)
def add_curriculum_entry(payload: CurriculumIn, db: Session = Depends(get_session),
                         admin: models.User = Depends(require_admin)):
    """Require a subject in a given term of a course; duplicates are rejected with 409."""
    return _plan_out(services.CatalogService(db).add_plan_entry(payload.course_id, payload.subject_id, payload.term))


@app.delete('/api/admin/curriculum/{plan_id}')
def remove_curriculum_entry(plan_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    services.CatalogService(db).remove_plan_entry(plan_id)
    return {'message': 'curriculum entry deleted'}


@app.post('/api/admin/groups', status_code=201)
def create_group(payload: GroupIn, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    group = services.GroupService(db).create_group(
        payload.name, payload.course_id, payload.subject_id, payload.teacher_id, payload.term,
        schedules=[s.model_dump() for s in payload.schedules],
    )
    return _group_out(db, group)


@app.patch('/api/admin/groups/{group_id}')
def update_group(group_id: int, payload: GroupUpdate, db: Session = Depends(get_session),
                 admin: models.User = Depends(require_admin)):
    group = services.GroupService(db).update_group(group_id, **payload.model_dump(exclude_unset=True))
    return _group_out(db, group)


@app.delete('/api/admin/groups/{group_id}')
def delete_group(group_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    services.GroupService(db).delete_group(group_id)
    return {'message': 'group deleted'}


@app.post('/api/admin/groups/{group_id}/schedules', status_code=201)
def add_schedule(group_id: int, payload: ScheduleIn, db: Session = Depends(get_session),
                 admin: models.User = Depends(require_admin)):
    """Add a weekly slot; overlapping slots on the same day are rejected with 409."""
    slot = services.GroupService(db).add_schedule(group_id, payload.day, payload.start_time, payload.end_time)
    return _schedule_out(slot)


@app.get('/api/admin/groups/{group_id}/schedules')
def list_schedules(group_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    return [_schedule_out(s) for s in services.GroupService(db).list_schedules(group_id)]


@app.patch('/api/admin/schedules/{schedule_id}')
def update_schedule(schedule_id: int, payload: ScheduleUpdate, db: Session = Depends(get_session),
                    admin: models.User = Depends(require_admin)):
    slot = services.GroupService(db).update_schedule(schedule_id, **payload.model_dump(exclude_unset=True))
    return _schedule_out(slot)


@app.delete('/api/admin/schedules/{schedule_id}')
def delete_schedule(schedule_id: int, db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    services.GroupService(db).delete_schedule(schedule_id)
    return {'message': 'schedule deleted'}


@app.post('/api/admin/groups/{group_id}/enrollments', status_code=201)
def enroll_student(group_id: int, payload: EnrollmentIn, db: Session = Depends(get_session),
                   admin: models.User = Depends(require_admin)):
    return _enrollment_out(services.GroupService(db).enroll(group_id, payload.student_id))


@app.post('/api/admin/system/end-quarter')
def end_quarter(db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    """End the current quarter: finalize open grades and advance eligible students."""
    return TermCloseOrchestrator(db).close_term(actor_user_id=admin.id).model_dump(by_alias=True)


@app.get('/api/admin/system/state')
def get_system_state(db: Session = Depends(get_session), admin: models.User = Depends(require_admin)):
    return _state_out(SystemStateService(db).get())


@app.patch('/api/admin/system/state')
def set_system_state(payload: SystemStateIn, db: Session = Depends(get_session),
                     admin: models.User = Depends(require_admin)):
    state = SystemStateService(db).set_maintenance(payload.maintenance, expected_mode=payload.expected_mode)
    message = 'System entered maintenance mode' if payload.maintenance else 'System is now active'
    return {'message': message, **_state_out(state)}


def _teacher_out(db: Session, teacher: models.Teacher) -> dict:
    user = repositories.UserRepository(db).get(teacher.user_id)
    return {
        'id': teacher.id,
        'specialty': teacher.specialty,
        'enrollment_number': user.enrollment_number,
        'first_name': user.first_name,
        'last_name': user.last_name,
        'created_at': user.created_at,
    }


def _roster_out(db: Session, group: models.Group) -> dict:
    item = _group_out(db, group)
    item['students'] = [_enrollment_out(e) for e in repositories.EnrollmentRepository(db).list_for_group(group.id)]
    return item


@app.get('/api/teachers/profile')
def teacher_profile(db: Session = Depends(get_session), teacher: models.Teacher = Depends(current_teacher)):
    return _teacher_out(db, teacher)


@app.patch('/api/teachers/profile')
def update_teacher_profile(payload: TeacherProfileUpdate, db: Session = Depends(get_session),
                           teacher: models.Teacher = Depends(current_teacher)):
    updated = services.UserService(db).update_teacher_profile(teacher.id, **payload.model_dump(exclude_unset=True))
    return _teacher_out(db, updated)


@app.get('/api/teachers/groups')
def teacher_groups(db: Session = Depends(get_session), teacher: models.Teacher = Depends(current_teacher)):
    """Groups taught by the caller with their rosters."""
    return [_roster_out(db, g) for g in repositories.GroupRepository(db).list_for_teacher(teacher.id)]


@app.get('/api/teachers/groups/{group_id}')
def teacher_group_detail(group_id: int, db: Session = Depends(get_session),
                         teacher: models.Teacher = Depends(current_teacher)):
    return _roster_out(db, services.GradingService(db).owned_group(group_id, teacher.id))


@app.get('/api/teachers/groups/{group_id}/students/{student_id}/grade')
def read_grade(group_id: int, student_id: int, db: Session = Depends(get_session),
               teacher: models.Teacher = Depends(current_teacher)):
    return _enrollment_out(services.GradingService(db).get_grade(teacher.id, group_id, student_id))


@app.patch('/api/teachers/groups/{group_id}/students/{student_id}/grade')
def submit_grade(group_id: int, student_id: int, payload: GradeIn,
                 db: Session = Depends(get_session), teacher: models.Teacher = Depends(current_teacher)):
    """Finalize a grade; updates the ledger and may advance the student's term."""
    return services.GradingService(db).submit_grade(
        teacher.id, group_id, student_id, payload.grade, actor_user_id=teacher.user_id,
    )


@app.get('/api/students/progress')
def student_progress(db: Session = Depends(get_session), student: models.Student = Depends(current_student)):
    return {'student': _student_out(student), 'terms': services.progress_by_term(db, student)}


@app.get('/api/students/progress-compared')
def student_progress_compared(db: Session = Depends(get_session), student: models.Student = Depends(current_student)):
    """Ledger view where subjects being taken right now read IN_PROGRESS."""
    return {'progress': services.progress_compared(db, student)}


@app.get('/api/students/current-subjects')
def student_current_subjects(db: Session = Depends(get_session), student: models.Student = Depends(current_student)):
    return {'subjects': services.current_subjects(db, student)}


@app.get('/api/students/grades')
def student_grades(db: Session = Depends(get_session), student: models.Student = Depends(current_student)):
    group_repo = repositories.GroupRepository(db)
    catalog_repo = repositories.CatalogRepository(db)
    out = []
    for enrollment in repositories.EnrollmentRepository(db).list_for_student(student.id):
        group = group_repo.get(enrollment.group_id)
        subject = catalog_repo.get_subject(group.subject_id)
        out.append({**_enrollment_out(enrollment), 'subject': subject.name, 'term': group.term})
    return out


@app.get('/api/students/available-subjects')
def available_subjects(db: Session = Depends(get_session), student: models.Student = Depends(current_student)):
    """Subjects offered next term whose prerequisites the caller has passed."""
    subjects = EligibilityResolver(db).available_subjects_for_next_term(student.id)
    return {'term': student.term + 1, 'subjects': [_subject_out(db, s) for s in subjects]}


@app.get('/api/students/eligibility/{subject_id}')
def subject_eligibility(subject_id: int, db: Session = Depends(get_session),
                        student: models.Student = Depends(current_student)):
    resolver = EligibilityResolver(db)
    return {
        'subject_id': subject_id,
        'eligible': resolver.is_eligible(student.id, subject_id),
        'missing_prerequisites': resolver.missing_prerequisites(student.id, subject_id),
    }
