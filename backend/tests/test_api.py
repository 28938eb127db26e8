from fastapi.testclient import TestClient
from sqlmodel import Session, select

from academia import models, repositories, services
from academia.main import app


def _grade_url(group, student):
    return f"/api/teachers/groups/{group.id}/students/{student.id}/grade"


def test_health_has_request_id(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert "X-Request-ID" in r.headers


def test_login_and_role_guard(client, seed):
    seed.user(models.Role.STUDENT, number="S100", password="secret")
    bad = client.post("/api/auth/login", json={"enrollment_number": "S100", "password": "nope"})
    assert bad.status_code == 401
    r = client.post("/api/auth/login", json={"enrollment_number": "S100", "password": "secret"})
    assert r.status_code == 200
    token = r.json()["access_token"]
    assert r.json()["role"] == "STUDENT"
    # students cannot reach admin routes
    denied = client.post("/api/admin/system/end-quarter", headers={"Authorization": f"Bearer {token}"})
    assert denied.status_code == 403
    missing = client.post("/api/admin/system/end-quarter")
    assert missing.status_code in (401, 403)


def test_admin_creates_student_with_term_one_ledger(client, seed, auth_headers, engine):
    admin = seed.admin()
    course = seed.course()
    intro = seed.subject("Intro")
    seed.plan(course, intro, 1)
    r = client.post("/api/admin/users", headers=auth_headers(admin), json={
        "enrollment_number": "A2024001", "first_name": "Ana", "last_name": "Ruiz",
        "role": "STUDENT", "course_id": course.id,
    })
    assert r.status_code == 201
    body = r.json()
    assert body["student"]["term"] == 1
    with Session(engine) as fresh:
        records = fresh.exec(select(models.ProgressRecord).where(
            models.ProgressRecord.student_id == body["student"]["id"])).all()
        assert [(rec.subject_id, rec.status) for rec in records] == [(intro.id, models.ProgressStatus.PENDING)]
    # the enrollment number is the initial password
    login = client.post("/api/auth/login", json={"enrollment_number": "A2024001", "password": "A2024001"})
    assert login.status_code == 200
    missing_course = client.post("/api/admin/users", headers=auth_headers(admin), json={
        "enrollment_number": "A2024002", "first_name": "Leo", "last_name": "Paz", "role": "STUDENT",
    })
    assert missing_course.status_code == 422


def test_teacher_failing_grade_updates_ledger(client, seed, auth_headers, engine):
    course = seed.course()
    subject = seed.subject("Statistics")
    seed.plan(course, subject, 1)
    teacher = seed.teacher()
    group = seed.group(course, subject, teacher)
    student = seed.student(course)
    seed.enroll(student, group)
    teacher_user = seed.session.get(models.User, teacher.user_id)

    r = client.patch(_grade_url(group, student), json={"grade": 5}, headers=auth_headers(teacher_user))
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "FAILED"
    assert body["is_active"] is False
    assert body["advanced"] is False
    with Session(engine) as fresh:
        record = fresh.exec(select(models.ProgressRecord).where(models.ProgressRecord.student_id == student.id)).one()
        assert record.status == models.ProgressStatus.FAILED
        assert record.grade == 5


def test_passing_last_required_grade_advances_student(client, seed, auth_headers):
    course = seed.course()
    subject = seed.subject("Statistics")
    seed.plan(course, subject, 1)
    teacher = seed.teacher()
    group = seed.group(course, subject, teacher)
    student = seed.student(course)
    seed.enroll(student, group)
    teacher_user = seed.session.get(models.User, teacher.user_id)

    r = client.patch(_grade_url(group, student), json={"grade": 6}, headers=auth_headers(teacher_user))
    assert r.status_code == 200
    assert r.json()["status"] == "PASSED"
    assert r.json()["advanced"] is True
    assert r.json()["term"] == 2


def test_grade_rejected_in_maintenance(client, seed, auth_headers, engine):
    course = seed.course()
    subject = seed.subject("Statistics")
    teacher = seed.teacher()
    group = seed.group(course, subject, teacher)
    student = seed.student(course)
    seed.enroll(student, group)
    seed.maintenance()
    teacher_user = seed.session.get(models.User, teacher.user_id)

    r = client.patch(_grade_url(group, student), json={"grade": 9}, headers=auth_headers(teacher_user))
    assert r.status_code == 403
    assert r.json()["error"] == "forbidden"
    with Session(engine) as fresh:
        enrollment = fresh.exec(select(models.Enrollment)).one()
        assert enrollment.grade is None
        assert enrollment.is_active is True
        assert fresh.exec(select(models.ProgressRecord)).all() == []


def test_grade_checks_ownership_and_range(client, seed, auth_headers):
    course = seed.course()
    subject = seed.subject("Statistics")
    owner = seed.teacher()
    other = seed.teacher()
    group = seed.group(course, subject, owner)
    student = seed.student(course)
    seed.enroll(student, group)
    other_user = seed.session.get(models.User, other.user_id)
    owner_user = seed.session.get(models.User, owner.user_id)

    assert client.patch(_grade_url(group, student), json={"grade": 7},
                        headers=auth_headers(other_user)).status_code == 403
    assert client.patch(_grade_url(group, student), json={"grade": 11},
                        headers=auth_headers(owner_user)).status_code == 422
    assert client.patch(f"/api/teachers/groups/9999/students/{student.id}/grade", json={"grade": 7},
                        headers=auth_headers(owner_user)).status_code == 404


def test_system_state_toggle(client, seed, auth_headers):
    admin = seed.admin()
    r = client.get("/api/admin/system/state", headers=auth_headers(admin))
    assert r.status_code == 200
    assert r.json()["mode"] == "ACTIVE"
    r = client.patch("/api/admin/system/state", json={"maintenance": True}, headers=auth_headers(admin))
    assert r.status_code == 200
    assert r.json()["mode"] == "MAINTENANCE"
    stale = client.patch("/api/admin/system/state", json={"maintenance": False, "expected_mode": "ACTIVE"},
                         headers=auth_headers(admin))
    assert stale.status_code == 409


def test_end_quarter_endpoint(client, seed, auth_headers):
    admin = seed.admin()
    course = seed.course()
    subject = seed.subject("Intro")
    seed.plan(course, subject, 1)
    group = seed.group(course, subject, seed.teacher())
    seed.enroll(seed.student(course), group)
    r = client.post("/api/admin/system/end-quarter", headers=auth_headers(admin))
    assert r.status_code == 200
    assert r.json() == {
        "message": "Quarter ended successfully",
        "studentsAdvanced": 0,
        "quarterClosed": True,
        "enrollmentsFinalized": 1,
        "recordsSynced": 1,
    }


def test_duplicate_curriculum_entry_conflicts(client, seed, auth_headers):
    admin = seed.admin()
    course = seed.course()
    subject = seed.subject("Intro")
    payload = {"course_id": course.id, "subject_id": subject.id, "term": 1}
    assert client.post("/api/admin/curriculum", json=payload, headers=auth_headers(admin)).status_code == 201
    dup = client.post("/api/admin/curriculum", json=payload, headers=auth_headers(admin))
    assert dup.status_code == 409
    assert dup.json()["error"] == "conflict"
    unknown = client.post("/api/admin/curriculum", json={**payload, "course_id": 9999}, headers=auth_headers(admin))
    assert unknown.status_code == 404


def test_subject_prerequisite_cycle_is_rejected(client, seed, auth_headers):
    admin = seed.admin()
    headers = auth_headers(admin)
    a = client.post("/api/subjects", json={"name": "A", "credits": 4}, headers=headers).json()
    b = client.post("/api/subjects", json={"name": "B", "credits": 4, "prerequisite_ids": [a["id"]]}, headers=headers).json()
    assert b["prerequisite_ids"] == [a["id"]]
    cycle = client.patch(f"/api/subjects/{a['id']}", json={"prerequisite_ids": [b["id"]]}, headers=headers)
    assert cycle.status_code == 422
    itself = client.patch(f"/api/subjects/{a['id']}", json={"prerequisite_ids": [a["id"]]}, headers=headers)
    assert itself.status_code == 422
    zero = client.post("/api/subjects", json={"name": "C", "credits": 0}, headers=headers)
    assert zero.status_code == 422


def test_group_schedules_validate_and_detect_overlap(client, seed, auth_headers):
    admin = seed.admin()
    headers = auth_headers(admin)
    course = seed.course()
    subject = seed.subject("Intro")
    teacher = seed.teacher()
    r = client.post("/api/admin/groups", headers=headers, json={
        "name": "G1", "course_id": course.id, "subject_id": subject.id, "teacher_id": teacher.id, "term": 1,
        "schedules": [{"day": "MONDAY", "start_time": "08:00", "end_time": "10:00"}],
    })
    assert r.status_code == 201
    group_id = r.json()["id"]
    assert r.json()["schedules"][0]["day"] == "MONDAY"

    url = f"/api/admin/groups/{group_id}/schedules"
    assert client.post(url, headers=headers, json={"day": "MONDAY", "start_time": "09:30", "end_time": "11:00"}).status_code == 409
    assert client.post(url, headers=headers, json={"day": "MONDAY", "start_time": "10:00", "end_time": "11:00"}).status_code == 201
    assert client.post(url, headers=headers, json={"day": "TUESDAY", "start_time": "25:00", "end_time": "26:00"}).status_code == 422
    assert client.post(url, headers=headers, json={"day": "TUESDAY", "start_time": "12:00", "end_time": "11:00"}).status_code == 422


def test_enrollment_requires_prerequisites(client, seed, auth_headers, engine):
    admin = seed.admin()
    headers = auth_headers(admin)
    course = seed.course()
    teacher = seed.teacher()
    basics = seed.subject("Basics")
    advanced = seed.subject("Advanced", prerequisites=[basics])
    group = seed.group(course, advanced, teacher, term=2)
    student = seed.student(course)

    r = client.post(f"/api/admin/groups/{group.id}/enrollments", json={"student_id": student.id}, headers=headers)
    assert r.status_code == 403
    seed.progress(student, basics)
    r = client.post(f"/api/admin/groups/{group.id}/enrollments", json={"student_id": student.id}, headers=headers)
    assert r.status_code == 201
    assert r.json()["is_active"] is True
    dup = client.post(f"/api/admin/groups/{group.id}/enrollments", json={"student_id": student.id}, headers=headers)
    assert dup.status_code == 409
    with Session(engine) as fresh:
        record = fresh.exec(select(models.ProgressRecord).where(
            models.ProgressRecord.student_id == student.id,
            models.ProgressRecord.subject_id == advanced.id,
        )).one()
        assert record.status == models.ProgressStatus.IN_PROGRESS


def test_student_views(client, seed, auth_headers):
    course = seed.course()
    teacher = seed.teacher()
    basics = seed.subject("Basics")
    advanced = seed.subject("Advanced", prerequisites=[basics])
    locked = seed.subject("Locked", prerequisites=[advanced])
    seed.plan(course, basics, 1)
    seed.plan(course, advanced, 2)
    seed.group(course, advanced, teacher, term=2)
    seed.group(course, locked, teacher, term=2)
    student = seed.student(course)
    seed.progress(student, basics, grade=9)
    user = seed.session.get(models.User, student.user_id)
    headers = auth_headers(user)

    progress = client.get("/api/students/progress", headers=headers)
    assert progress.status_code == 200
    terms = progress.json()["terms"]
    assert terms[0]["term"] == 1
    assert terms[0]["subjects"][0]["status"] == "PASSED"

    available = client.get("/api/students/available-subjects", headers=headers).json()
    assert available["term"] == 2
    assert [s["id"] for s in available["subjects"]] == [advanced.id]

    eligibility = client.get(f"/api/students/eligibility/{locked.id}", headers=headers).json()
    assert eligibility["eligible"] is False
    assert eligibility["missing_prerequisites"] == [advanced.id]
    assert client.get("/api/students/eligibility/9999", headers=headers).status_code == 404


def test_toggle_payment(client, seed, auth_headers):
    admin = seed.admin()
    student = seed.student(seed.course())
    url = f"/api/admin/users/students/{student.id}/toggle-payment"
    assert client.post(url, headers=auth_headers(admin)).json()["has_paid"] is True
    assert client.post(url, headers=auth_headers(admin)).json()["has_paid"] is False


def test_end_quarter_rejected_in_maintenance(client, seed, auth_headers, engine):
    admin = seed.admin()
    course = seed.course()
    subject = seed.subject("Intro")
    group = seed.group(course, subject, seed.teacher())
    seed.enroll(seed.student(course), group)
    seed.maintenance()

    r = client.post("/api/admin/system/end-quarter", headers=auth_headers(admin))
    assert r.status_code == 403
    assert r.json()["error"] == "forbidden"
    with Session(engine) as fresh:
        enrollment = fresh.exec(select(models.Enrollment)).one()
        assert enrollment.grade is None
        assert enrollment.is_active is True


def test_system_state_row_is_stored_on_first_read(client, seed, auth_headers, engine):
    admin = seed.admin()
    assert client.get("/api/admin/system/state", headers=auth_headers(admin)).status_code == 200
    with Session(engine) as fresh:
        state = fresh.get(models.SystemState, 1)
        assert state is not None
        assert state.mode == models.SystemMode.ACTIVE


def test_unhandled_error_returns_generic_500(client, monkeypatch):
    def _broken(db):
        raise RuntimeError("counter exploded")

    monkeypatch.setattr(services, "catalog_counts", _broken)
    r = TestClient(app, raise_server_exceptions=False).get("/api/stats")
    assert r.status_code == 500
    assert r.json() == {"detail": "internal server error", "error": "internal"}


def test_unique_violation_from_database_maps_to_conflict(client, seed, auth_headers, engine, monkeypatch):
    admin = seed.admin()
    seed.user(models.Role.TEACHER, number="T900")
    # skip the service-level duplicate check so the unique index has to catch it
    monkeypatch.setattr(repositories.UserRepository, "get_by_enrollment_number", lambda self, number: None)

    r = client.post("/api/admin/users", headers=auth_headers(admin), json={
        "enrollment_number": "T900", "first_name": "Eva", "last_name": "Sol", "role": "TEACHER",
    })
    assert r.status_code == 409
    assert r.json()["error"] == "conflict"
    with Session(engine) as fresh:
        users = fresh.exec(select(models.User).where(models.User.enrollment_number == "T900")).all()
        assert len(users) == 1


def test_course_update_and_delete(client, seed, auth_headers):
    admin = seed.admin()
    headers = auth_headers(admin)
    planned = seed.course("Planned")
    seed.plan(planned, seed.subject("Intro"), 1)
    empty = seed.course("Empty")

    r = client.patch(f"/api/courses/{empty.id}", json={"name": "Renamed", "total_terms": 6}, headers=headers)
    assert r.status_code == 200
    assert r.json()["name"] == "Renamed"
    assert r.json()["total_terms"] == 6

    assert client.delete(f"/api/courses/{planned.id}", headers=headers).status_code == 409
    assert client.delete(f"/api/courses/{empty.id}", headers=headers).status_code == 200
    assert client.delete(f"/api/courses/{empty.id}", headers=headers).status_code == 404
    assert [c["id"] for c in client.get("/api/courses").json()] == [planned.id]


def test_subject_delete_rules(client, seed, auth_headers):
    admin = seed.admin()
    headers = auth_headers(admin)
    basics = seed.subject("Basics")
    advanced = seed.subject("Advanced", prerequisites=[basics])
    planned = seed.subject("Planned")
    seed.plan(seed.course(), planned, 1)

    assert client.delete(f"/api/subjects/{basics.id}", headers=headers).status_code == 409
    assert client.delete(f"/api/subjects/{planned.id}", headers=headers).status_code == 409
    assert client.delete(f"/api/subjects/{advanced.id}", headers=headers).status_code == 200
    # the prerequisite edge went away with the dependent subject
    assert client.delete(f"/api/subjects/{basics.id}", headers=headers).status_code == 200
    assert [s["id"] for s in client.get("/api/subjects").json()] == [planned.id]


def test_group_update_and_delete(client, seed, auth_headers, engine):
    admin = seed.admin()
    headers = auth_headers(admin)
    course = seed.course()
    subject = seed.subject("Intro")
    teacher = seed.teacher()
    substitute = seed.teacher()
    busy = seed.group(course, subject, teacher, name="Busy")
    seed.enroll(seed.student(course), busy)
    idle = client.post("/api/admin/groups", headers=headers, json={
        "name": "Idle", "course_id": course.id, "subject_id": subject.id, "teacher_id": teacher.id, "term": 1,
        "schedules": [{"day": "FRIDAY", "start_time": "08:00", "end_time": "09:00"}],
    }).json()

    r = client.patch(f"/api/admin/groups/{busy.id}", json={"name": "Busy A", "teacher_id": substitute.id},
                     headers=headers)
    assert r.status_code == 200
    assert r.json()["name"] == "Busy A"
    assert r.json()["teacher_id"] == substitute.id
    assert client.patch(f"/api/admin/groups/{busy.id}", json={"teacher_id": 9999}, headers=headers).status_code == 404

    assert client.delete(f"/api/admin/groups/{busy.id}", headers=headers).status_code == 409
    assert client.delete(f"/api/admin/groups/{idle['id']}", headers=headers).status_code == 200
    with Session(engine) as fresh:
        assert fresh.get(models.Group, idle["id"]) is None
        assert fresh.exec(select(models.GroupSchedule)).all() == []


def test_schedule_list_update_and_delete(client, seed, auth_headers):
    admin = seed.admin()
    headers = auth_headers(admin)
    group = seed.group(seed.course(), seed.subject("Intro"), seed.teacher())
    url = f"/api/admin/groups/{group.id}/schedules"
    tuesday = client.post(url, headers=headers, json={"day": "TUESDAY", "start_time": "08:00", "end_time": "10:00"}).json()
    early = client.post(url, headers=headers, json={"day": "MONDAY", "start_time": "08:00", "end_time": "10:00"}).json()
    late = client.post(url, headers=headers, json={"day": "MONDAY", "start_time": "10:00", "end_time": "11:00"}).json()

    listed = client.get(url, headers=headers).json()
    assert [s["id"] for s in listed] == [early["id"], late["id"], tuesday["id"]]

    assert client.patch(f"/api/admin/schedules/{late['id']}", json={"start_time": "09:00"},
                        headers=headers).status_code == 409
    moved = client.patch(f"/api/admin/schedules/{early['id']}", json={"end_time": "09:30"}, headers=headers)
    assert moved.status_code == 200
    assert moved.json()["end_time"] == "09:30"
    assert client.patch(f"/api/admin/schedules/{late['id']}", json={"end_time": "09:00"},
                        headers=headers).status_code == 422
    assert client.patch("/api/admin/schedules/9999", json={"day": "FRIDAY"}, headers=headers).status_code == 404

    assert client.delete(f"/api/admin/schedules/{tuesday['id']}", headers=headers).status_code == 200
    assert [s["id"] for s in client.get(url, headers=headers).json()] == [early["id"], late["id"]]


def test_current_subjects_and_compared_progress(client, seed, auth_headers):
    admin = seed.admin()
    course = seed.course()
    teacher = seed.teacher()
    intro = seed.subject("Intro")
    logic = seed.subject("Logic")
    seed.plan(course, intro, 1)
    seed.plan(course, logic, 1)
    current = seed.group(course, intro, teacher, name="Intro A")
    finished = seed.group(course, logic, teacher, name="Logic A")
    for day, start, end in (("WEDNESDAY", "12:00", "13:00"), ("MONDAY", "08:00", "09:00")):
        client.post(f"/api/admin/groups/{current.id}/schedules", headers=auth_headers(admin),
                    json={"day": day, "start_time": start, "end_time": end})
    student = seed.student(course)
    seed.enroll(student, current)
    seed.enroll(student, finished, grade=8, active=False)
    seed.progress(student, intro, status=models.ProgressStatus.PENDING, grade=None)
    seed.progress(student, logic, grade=8)
    headers = auth_headers(seed.session.get(models.User, student.user_id))

    subjects = client.get("/api/students/current-subjects", headers=headers).json()["subjects"]
    assert len(subjects) == 1
    assert subjects[0]["group"] == "Intro A"
    assert subjects[0]["subject"] == "Intro"
    assert subjects[0]["teacher"] == "Test Teacher"
    assert [s["day"] for s in subjects[0]["schedules"]] == ["MONDAY", "WEDNESDAY"]

    progress = client.get("/api/students/progress-compared", headers=headers).json()["progress"]
    assert {p["subject_id"]: p["status"] for p in progress} == {intro.id: "IN_PROGRESS", logic.id: "PASSED"}
    assert all(p["term"] == 1 for p in progress)


def test_profiles_and_stats(client, seed, auth_headers):
    seed.admin()
    course = seed.course()
    student = seed.student(course)
    seed.student(course)
    teacher = seed.teacher()
    teacher_headers = auth_headers(seed.session.get(models.User, teacher.user_id))

    me = client.get("/api/auth/profile", headers=auth_headers(seed.session.get(models.User, student.user_id)))
    assert me.status_code == 200
    assert me.json()["student"]["id"] == student.id

    profile = client.get("/api/teachers/profile", headers=teacher_headers).json()
    assert profile["id"] == teacher.id
    assert profile["specialty"] == "Math"
    updated = client.patch("/api/teachers/profile", json={"specialty": "Physics", "first_name": "Rosa"},
                           headers=teacher_headers).json()
    assert updated["specialty"] == "Physics"
    assert updated["first_name"] == "Rosa"

    assert client.get("/api/stats").json() == {"students": 2, "teachers": 1, "courses": 1}


def test_teacher_group_detail_is_limited_to_owner(client, seed, auth_headers):
    course = seed.course()
    owner = seed.teacher()
    other = seed.teacher()
    group = seed.group(course, seed.subject("Intro"), owner)
    student = seed.student(course)
    seed.enroll(student, group)

    r = client.get(f"/api/teachers/groups/{group.id}", headers=auth_headers(seed.session.get(models.User, owner.user_id)))
    assert r.status_code == 200
    assert [e["student_id"] for e in r.json()["students"]] == [student.id]
    other_headers = auth_headers(seed.session.get(models.User, other.user_id))
    assert client.get(f"/api/teachers/groups/{group.id}", headers=other_headers).status_code == 403
    assert client.get("/api/teachers/groups/9999", headers=other_headers).status_code == 404
