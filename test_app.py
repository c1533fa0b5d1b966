import importlib

import pytest

from errors import ConflictError


@pytest.fixture
def app_module(monkeypatch, database, tmp_path):
    monkeypatch.setenv("SECRET_KEY", "x" * 40)
    monkeypatch.setenv("SUPER_ADMIN_PASSWORD", "supersecurepassword")
    monkeypatch.setenv("RUN_STARTUP_DDL", "1")
    monkeypatch.setenv("RUN_STARTUP_BOOTSTRAP", "0")
    monkeypatch.setenv("PAYSTACK_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "app.log"))

    import cbt_platform

    mod = importlib.reload(cbt_platform)
    mod.app.config["TESTING"] = True
    mod.app.config["WTF_CSRF_ENABLED"] = False
    return mod


@pytest.fixture
def client(app_module):
    return app_module.app.test_client()


def login_as(client, role, **extra):
    with client.session_transaction() as sess:
        sess["user_id"] = extra.pop("user_id", "U1")
        sess["role"] = role
        sess["school_id"] = extra.pop("school_id", "SCH1")
        for key, value in extra.items():
            sess[key] = value


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok"}


def test_unknown_route_answers_json(client):
    resp = client.get("/api/nowhere")
    assert resp.status_code == 404
    assert "error" in resp.get_json()


def test_login_sets_session_and_me_reads_it(client, world):
    resp = client.post("/api/auth/login", json={"username": "Teacher", "password": "password123"})
    assert resp.status_code == 200
    assert resp.get_json()["user"]["teacher_id"] == world.teacher_id

    with client.session_transaction() as sess:
        assert sess["role"] == "TEACHER"
        assert sess["school_id"] == world.school_id

    me = client.get("/api/auth/me").get_json()["user"]
    assert me["teacher_id"] == world.teacher_id

    client.post("/api/auth/logout")
    assert client.get("/api/auth/me").status_code == 401


def test_login_with_bad_password(client, world):
    resp = client.post("/api/auth/login", json={"username": "teacher", "password": "nope"})
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "Invalid username or password."}


def test_submit_exam_requires_login(client):
    resp = client.post("/api/student/exams/E1/submit", json={"answers": {}})
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "Unauthorized"}


def test_submit_exam_route_passes_answers(client, app_module, monkeypatch):
    m = app_module
    called = {}

    def fake_submit(actor, exam_id, answers):
        called.update({"actor": actor, "exam_id": exam_id, "answers": answers})
        return {"score": 10, "total_points": 30, "percentage": 33}

    monkeypatch.setattr(m.exam_service, "submit_exam", fake_submit)
    login_as(client, "STUDENT", student_id="ST1")

    resp = client.post("/api/student/exams/E1/submit", json={"answers": {"Q1": "4", "Q2": False}})
    assert resp.status_code == 200
    assert resp.get_json()["percentage"] == 33
    assert called["exam_id"] == "E1"
    assert called["answers"] == {"Q1": "4", "Q2": False}
    assert called["actor"]["student_id"] == "ST1"


def test_submit_exam_rejects_non_object_answers(client):
    login_as(client, "STUDENT", student_id="ST1")
    resp = client.post("/api/student/exams/E1/submit", json={"answers": ["4"]})
    assert resp.status_code == 400


def test_conflict_maps_to_400(client, app_module, monkeypatch):
    def already_submitted(*args, **kwargs):
        raise ConflictError("Exam already submitted")

    monkeypatch.setattr(app_module.exam_service, "submit_exam", already_submitted)
    login_as(client, "STUDENT", student_id="ST1")
    resp = client.post("/api/student/exams/E1/submit", json={"answers": {}})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Exam already submitted"}


def test_unexpected_error_is_500(client, app_module, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("db exploded")

    monkeypatch.setattr(app_module.exam_service, "get_student_result", boom)
    login_as(client, "STUDENT", student_id="ST1")
    resp = client.get("/api/student/exams/E1/result")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Internal server error"}


def test_reset_attempts_route(client, app_module, monkeypatch):
    called = {}

    def fake_reset(actor, exam_id, student_id=None, reset_all=False):
        called.update({"exam_id": exam_id, "student_id": student_id, "reset_all": reset_all})
        return {"message": "ok", "reset_all": reset_all, "attempts_deleted": 3, "results_deleted": 3}

    monkeypatch.setattr(app_module.exam_service, "reset_attempts", fake_reset)
    login_as(client, "TEACHER", teacher_id="T1")
    resp = client.post("/api/teacher/exams/E1/reset-attempts", json={"reset_all": True})
    assert resp.status_code == 200
    assert called == {"exam_id": "E1", "student_id": None, "reset_all": True}


def test_manual_control_route_passes_flag_only_when_given(client, app_module, monkeypatch):
    calls = []

    def fake_control(actor, exam_id, action, enable):
        calls.append((action, enable))
        return {"id": exam_id}

    monkeypatch.setattr(app_module.exam_service, "manual_control", fake_control)
    login_as(client, "SCHOOL_ADMIN")
    client.post("/api/school/exams/E1/manual-control", json={"action": "make_live"})
    client.post("/api/school/exams/E1/manual-control",
                json={"action": "toggle_manual_control", "enable_manual_control": False})
    assert calls == [("make_live", None), ("toggle_manual_control", False)]

    resp = client.post("/api/school/exams/E1/manual-control", json={"action": "explode"})
    assert resp.status_code == 400


def test_manual_control_needs_school_admin(client):
    login_as(client, "TEACHER", teacher_id="T1")
    resp = client.post("/api/school/exams/E1/manual-control", json={"action": "make_live"})
    assert resp.status_code == 401


def test_academic_result_score_ranges_are_validated(client):
    login_as(client, "TEACHER", teacher_id="T1")
    payload = {"student_id": "S1", "subject_id": "SUB1", "class_id": "C1", "term": "First Term",
               "session": "2025/2026", "ca_score": 41, "exam_score": 50}
    resp = client.post("/api/teacher/academic-results", json=payload)
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "ca_score: CA score must be between 0 and 40"}


def test_publish_route_reads_id_list(client, app_module, monkeypatch):
    called = {}

    def fake_publish(actor, result_ids=None, class_id=None, term=None, session=None, school_id=None):
        called.update({"result_ids": result_ids, "class_id": class_id, "school_id": school_id})
        return {"count": len(result_ids)}

    monkeypatch.setattr(app_module.academic_service, "publish_academic_results", fake_publish)
    login_as(client, "SCHOOL_ADMIN")
    resp = client.post("/api/admin/academic-results/publish", json={"result_ids": ["R1", "R2"]})
    assert resp.status_code == 200
    assert called == {"result_ids": ["R1", "R2"], "class_id": None, "school_id": None}


def test_reject_route_requires_reason(client):
    login_as(client, "SCHOOL_ADMIN")
    resp = client.post("/api/admin/academic-results/R1/reject", json={})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "reason: Rejection reason is required"}


def test_full_exam_flow_over_http(client, world, make_exam):
    exam_id, (q1, q2) = make_exam()
    client.post("/api/auth/login", json={"username": "ada", "password": "password123"})
    resp = client.post(f"/api/student/exams/{exam_id}/submit", json={"answers": {q1: "4", q2: True}})
    assert resp.status_code == 200
    assert resp.get_json()["percentage"] == 100

    again = client.post(f"/api/student/exams/{exam_id}/submit", json={"answers": {q1: "4"}})
    assert again.status_code == 400
    assert again.get_json() == {"error": "Exam already submitted"}


def test_verify_payment_route(client, app_module, monkeypatch):
    called = {}

    def fake_verify(payment_client, reference):
        called["reference"] = reference
        called["secret"] = payment_client.secret_key
        return {"success": True, "payment": {"reference": reference, "status": "SUCCESS"}}

    monkeypatch.setattr(app_module.payments, "verify_payment", fake_verify)
    resp = client.post("/api/payments/verify", json={"reference": " PAY_1_ABCDEF "})
    assert resp.status_code == 200
    assert called == {"reference": "PAY_1_ABCDEF", "secret": "sk_test_123"}

    missing = client.post("/api/payments/verify", json={})
    assert missing.get_json() == {"error": "reference: Payment reference is required"}


def test_csrf_is_enforced_except_for_payment_callback(app_module, monkeypatch):
    m = app_module
    m.app.config["WTF_CSRF_ENABLED"] = True
    client = m.app.test_client()
    monkeypatch.setattr(m.payments, "verify_payment", lambda payment_client, reference: {"success": False})

    resp = client.post("/api/auth/login", json={"username": "x", "password": "y"})
    assert resp.status_code == 400
    assert "CSRF" in resp.get_json()["error"]

    token = client.get("/api/auth/csrf-token").get_json()["csrf_token"]
    resp = client.post("/api/auth/login", json={"username": "x", "password": "y"},
                       headers={"X-CSRFToken": token})
    assert resp.status_code == 401

    assert client.post("/api/payments/verify", json={"reference": "PAY_1_ABCDEF"}).status_code == 200


def test_suspended_account_is_refused_at_login(client, world):
    client.post("/api/auth/login", json={"username": "admin", "password": "password123"})
    resp = client.post(f"/api/admin/users/{world.student['user_id']}/suspend")
    assert resp.status_code == 200
    assert resp.get_json()["user"]["is_active"] is False
    client.post("/api/auth/logout")

    resp = client.post("/api/auth/login", json={"username": "ada", "password": "password123"})
    assert resp.status_code == 403
    assert resp.get_json() == {"error": "Account is suspended. Contact your administrator."}


def test_user_admin_routes_need_an_admin(client):
    login_as(client, "TEACHER", teacher_id="T1")
    assert client.post("/api/admin/users/U2/suspend").status_code == 401
    assert client.get("/api/admin/users").status_code == 401


def test_reset_password_route_validates_length(client):
    login_as(client, "SCHOOL_ADMIN")
    resp = client.post("/api/admin/users/U2/reset-password", json={"new_password": "short"})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "new_password: Password must be at least 8 characters long"}


def test_admin_results_listing_passes_filters(client, app_module, monkeypatch):
    called = {}

    def fake_list(actor, **filters):
        called.update(filters)
        return {"results": [], "statistics": {"total": 0}}

    monkeypatch.setattr(app_module.academic_service, "list_academic_results", fake_list)
    login_as(client, "SCHOOL_ADMIN")
    resp = client.get("/api/admin/academic-results?status=SUBMITTED&term=First+Term")
    assert resp.status_code == 200
    assert called["status"] == "SUBMITTED"
    assert called["term"] == "First Term"
    assert called["class_id"] is None


def test_teacher_can_list_and_delete_draft_results(client, app_module, monkeypatch):
    deleted = []
    monkeypatch.setattr(app_module.academic_service, "list_teacher_academic_results",
                        lambda actor, **filters: [{"id": "R1", "status": "DRAFT"}])
    monkeypatch.setattr(app_module.academic_service, "delete_academic_result",
                        lambda actor, result_id: deleted.append(result_id) or {"id": result_id})
    login_as(client, "TEACHER", teacher_id="T1")

    assert client.get("/api/teacher/academic-results").get_json() == {"results": [{"id": "R1", "status": "DRAFT"}]}
    assert client.delete("/api/teacher/academic-results/R1").status_code == 200
    assert deleted == ["R1"]


def test_exam_listing_for_teachers_and_admins(client, world, make_exam):
    exam_id, _ = make_exam()
    client.post("/api/auth/login", json={"username": "teacher", "password": "password123"})
    assert [e["id"] for e in client.get("/api/teacher/exams").get_json()["exams"]] == [exam_id]
    client.post("/api/auth/logout")

    client.post("/api/auth/login", json={"username": "admin", "password": "password123"})
    assert [e["id"] for e in client.get("/api/admin/exams").get_json()["exams"]] == [exam_id]
    client.post("/api/auth/logout")

    client.post("/api/auth/login", json={"username": "ada", "password": "password123"})
    assert client.get("/api/admin/exams").status_code == 401
