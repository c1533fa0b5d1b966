"""
CBT Platform - multi-school computer based testing and result management

JSON API over Flask: schools register and are approved by a super admin,
teachers author exams, lesson plans and term results, students take exams,
and school admins approve, publish and control what goes live.
"""

from flask import Flask, jsonify, request, session
from flask_wtf.csrf import CSRFError, CSRFProtect, generate_csrf
from werkzeug.exceptions import HTTPException

import logging
import os

from dotenv import load_dotenv

import academic_service
import exam_service
import payments
import school_service
from access_policy import require
from db import db_connection, db_execute, init_db
from errors import PaymentGatewayError, ServiceError, UnauthorizedError, ValidationError
from forms import (
    AcademicResultForm, ApproveResultForm, ClassForm, ClassSubjectForm, ExamForm,
    ExamReviewForm, GradeAnswerForm, GradingBandForm, LessonPlanForm, LessonPlanReviewForm,
    LoginForm, ManualControlForm, PaymentForm, RejectResultForm, ResetAttemptsForm,
    ResetPasswordForm, ResultSelectionForm, SaveAnswerForm, SchoolRegistrationForm, StudentForm, SubjectForm,
    TeacherForm, VerifyPaymentForm, validate_form,
)

load_dotenv()

app = Flask(__name__)
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        # Local development only.
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None

csrf = CSRFProtect(app)

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://', 'sqlite:///')):
    raise RuntimeError("DATABASE_URL must be a postgresql:// or sqlite:/// connection string.")

RUN_STARTUP_DDL = os.environ.get('RUN_STARTUP_DDL', '1').strip().lower() in ('1', 'true', 'yes')
RUN_STARTUP_BOOTSTRAP = os.environ.get('RUN_STARTUP_BOOTSTRAP', '1').strip().lower() in ('1', 'true', 'yes')
SUPER_ADMIN_USERNAME = os.environ.get('SUPER_ADMIN_USERNAME', 'superadmin').strip()
SUPER_ADMIN_PASSWORD = os.environ.get('SUPER_ADMIN_PASSWORD', '').strip()
if RUN_STARTUP_BOOTSTRAP:
    if not SUPER_ADMIN_PASSWORD:
        raise RuntimeError("SUPER_ADMIN_PASSWORD is required. Set it in environment variables.")
    if len(SUPER_ADMIN_PASSWORD) < 12:
        raise RuntimeError("SUPER_ADMIN_PASSWORD is too short. Use at least 12 characters.")

PAYSTACK_SECRET_KEY = os.environ.get('PAYSTACK_SECRET_KEY', '').strip()
PAYSTACK_BASE_URL = os.environ.get('PAYSTACK_BASE_URL', payments.DEFAULT_BASE_URL).strip()
PAYMENT_CURRENCY = os.environ.get('PAYMENT_CURRENCY', 'NGN').strip().upper()

LOG_FILE = os.environ.get('LOG_FILE', 'app.log')
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').strip().upper()

# Set up logging
logging.basicConfig(filename=LOG_FILE, level=getattr(logging, LOG_LEVEL, logging.INFO),
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

# Initialize database (can be disabled when schema is managed by migrations).
if RUN_STARTUP_DDL:
    init_db()
else:
    logging.warning("RUN_STARTUP_DDL is disabled. Ensure schema is already migrated before startup.")

if RUN_STARTUP_BOOTSTRAP:
    school_service.bootstrap_super_admin(SUPER_ADMIN_USERNAME, SUPER_ADMIN_PASSWORD)

SESSION_KEYS = ('user_id', 'username', 'role', 'school_id', 'teacher_id', 'student_id')


def current_actor():
    """The caller as stored in the session at login, or None."""
    if 'user_id' not in session:
        return None
    return {key: session.get(key) for key in SESSION_KEYS}


def authorized(action):
    """Check the caller's role for `action` before the body is read."""
    actor = current_actor()
    require(actor, action)
    return actor


def json_body():
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object.')
    return payload


def get_client_ip():
    """Best-effort client IP extraction."""
    trust_proxy = os.environ.get('TRUST_PROXY_HEADERS', '').strip().lower() in ('1', 'true', 'yes')
    xff = (request.headers.get('X-Forwarded-For') or '').strip()
    if trust_proxy and xff:
        ip = xff.split(',')[0].strip()
        if ip:
            return ip
    return (request.remote_addr or '').strip() or 'unknown'


def payment_client():
    if not PAYSTACK_SECRET_KEY:
        raise PaymentGatewayError('Payment gateway is not configured', detail='PAYSTACK_SECRET_KEY is empty')
    return payments.PaystackClient(PAYSTACK_SECRET_KEY, PAYSTACK_BASE_URL)


def selection_args(form):
    return {
        'result_ids': [rid for rid in (form.result_ids.data or []) if rid],
        'class_id': form.class_id.data or None,
        'term': form.term.data or None,
        'session': form.session.data or None,
    }


# ==================== ERROR HANDLERS ====================

@app.errorhandler(ServiceError)
def service_error(error):
    if isinstance(error, PaymentGatewayError):
        logging.error("Payment gateway error: %s (%s)", error.message, error.detail)
    return jsonify({'error': error.message}), error.status_code


@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    return jsonify({'error': error.description or 'CSRF token missing or invalid.'}), 400


@app.errorhandler(HTTPException)
def http_error(error):
    return jsonify({'error': error.description}), error.code


@app.errorhandler(Exception)
def unexpected_error(error):
    logging.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({'error': 'Internal server error'}), 500


# ==================== AUTH ====================

@app.route('/health')
def health():
    with db_connection() as conn:
        db_execute(conn.cursor(), 'SELECT 1')
    return jsonify({'status': 'ok'})


@app.route('/api/auth/csrf-token')
def csrf_token():
    return jsonify({'csrf_token': generate_csrf()})


@app.route('/api/auth/login', methods=['POST'])
def login():
    """Single login for all roles."""
    form = validate_form(LoginForm, json_body())
    actor = school_service.authenticate(form.username.data, form.password.data, get_client_ip())
    session.clear()
    for key in SESSION_KEYS:
        session[key] = actor.get(key)
    logging.info("User %s logged in as %s", actor['username'], actor['role'])
    return jsonify({'user': actor})


@app.route('/api/auth/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'message': 'Logged out'})


@app.route('/api/auth/me')
def me():
    actor = current_actor()
    if not actor:
        raise UnauthorizedError('Unauthorized')
    return jsonify({'user': actor})


# ==================== SCHOOLS ====================

@app.route('/api/schools/register', methods=['POST'])
def register_school():
    form = validate_form(SchoolRegistrationForm, json_body())
    return jsonify(school_service.register_school(form.data)), 201


@app.route('/api/admin/schools')
def list_schools():
    return jsonify({'schools': school_service.list_schools(current_actor(), request.args.get('status'))})


@app.route('/api/admin/schools/<school_id>/<action>', methods=['POST'])
def review_school(school_id, action):
    return jsonify({'school': school_service.review_school(current_actor(), school_id, action)})


@app.route('/api/admin/users')
def list_users():
    actor = authorized('user.manage')
    users = school_service.list_users(actor, request.args.get('role'), request.args.get('school_id'))
    return jsonify({'users': users})


@app.route('/api/admin/users/<user_id>/suspend', methods=['POST'])
def suspend_user(user_id):
    actor = authorized('user.manage')
    return jsonify({'user': school_service.set_user_active(actor, user_id, False),
                    'message': 'User suspended successfully'})


@app.route('/api/admin/users/<user_id>/reactivate', methods=['POST'])
def reactivate_user(user_id):
    actor = authorized('user.manage')
    return jsonify({'user': school_service.set_user_active(actor, user_id, True),
                    'message': 'User reactivated successfully'})


@app.route('/api/admin/users/<user_id>/reset-password', methods=['POST'])
def reset_user_password(user_id):
    actor = authorized('user.manage')
    form = validate_form(ResetPasswordForm, json_body())
    return jsonify(school_service.reset_user_password(actor, user_id, form.new_password.data))


@app.route('/api/school/classes', methods=['POST'])
def create_class():
    actor = authorized('school.manage_users')
    form = validate_form(ClassForm, json_body())
    return jsonify(school_service.create_class(actor, form.data)), 201


@app.route('/api/school/subjects', methods=['POST'])
def create_subject():
    actor = authorized('school.manage_users')
    form = validate_form(SubjectForm, json_body())
    return jsonify(school_service.create_subject(actor, form.data)), 201


@app.route('/api/school/teachers', methods=['POST'])
def create_teacher():
    actor = authorized('school.manage_users')
    form = validate_form(TeacherForm, json_body())
    return jsonify(school_service.create_teacher(actor, form.data)), 201


@app.route('/api/school/students', methods=['POST'])
def create_student():
    actor = authorized('school.manage_users')
    form = validate_form(StudentForm, json_body())
    return jsonify(school_service.create_student(actor, form.data)), 201


@app.route('/api/school/class-subjects', methods=['POST'])
def assign_class_subject():
    actor = authorized('school.manage_users')
    form = validate_form(ClassSubjectForm, json_body())
    assignment = school_service.assign_class_subject(
        actor, form.class_id.data, form.subject_id.data, form.teacher_id.data
    )
    return jsonify(assignment), 201


# ==================== EXAMS ====================

@app.route('/api/teacher/exams', methods=['POST'])
def create_exam():
    actor = authorized('exam.create')
    payload = json_body()
    form = validate_form(ExamForm, payload)
    questions = payload.get('questions') or []
    if not isinstance(questions, list):
        raise ValidationError('questions must be a list')
    return jsonify({'exam': exam_service.create_exam(actor, form.data, questions)}), 201


@app.route('/api/teacher/exams')
@app.route('/api/admin/exams')
def list_exams():
    actor = authorized('exam.list')
    exams = exam_service.list_exams(actor, request.args.get('status'), request.args.get('school_id'))
    return jsonify({'exams': exams})


@app.route('/api/teacher/exams/<exam_id>/submit-for-approval', methods=['POST'])
def submit_exam_for_approval(exam_id):
    return jsonify({'exam': exam_service.submit_exam_for_approval(current_actor(), exam_id)})


@app.route('/api/admin/exams/<exam_id>/review', methods=['POST'])
def review_exam(exam_id):
    actor = authorized('exam.review')
    form = validate_form(ExamReviewForm, json_body())
    exam = exam_service.review_exam(
        actor, exam_id, form.action.data, form.rejection_reason.data or '', form.publish_now.data
    )
    return jsonify({'exam': exam})


@app.route('/api/teacher/exams/<exam_id>/reset-attempts', methods=['POST'])
def reset_exam_attempts(exam_id):
    actor = authorized('exam.reset_attempts')
    form = validate_form(ResetAttemptsForm, json_body())
    result = exam_service.reset_attempts(
        actor, exam_id, student_id=form.student_id.data or None, reset_all=form.reset_all.data
    )
    return jsonify(result)


@app.route('/api/school/exams/<exam_id>/manual-control', methods=['POST'])
def exam_manual_control(exam_id):
    actor = authorized('exam.manual_control')
    payload = json_body()
    form = validate_form(ManualControlForm, payload)
    enable = form.enable_manual_control.data if 'enable_manual_control' in payload else None
    return jsonify(exam_service.manual_control(actor, exam_id, form.action.data, enable))


@app.route('/api/teacher/exams/<exam_id>/results')
def exam_results(exam_id):
    return jsonify(exam_service.get_exam_results(current_actor(), exam_id))


@app.route('/api/teacher/exams/<exam_id>/grade', methods=['POST'])
def grade_exam_answer(exam_id):
    actor = authorized('exam.grade')
    form = validate_form(GradeAnswerForm, json_body())
    result = exam_service.grade_answer(
        actor, exam_id, form.student_id.data, form.question_id.data, form.points_awarded.data
    )
    return jsonify(result)


@app.route('/api/student/exams')
def student_exams():
    return jsonify({'exams': exam_service.list_student_exams(current_actor())})


@app.route('/api/student/exams/<exam_id>/start', methods=['POST'])
def start_exam(exam_id):
    return jsonify(exam_service.start_exam(current_actor(), exam_id))


@app.route('/api/student/exams/<exam_id>/answer', methods=['POST'])
def save_exam_answer(exam_id):
    actor = authorized('exam.take')
    payload = json_body()
    form = validate_form(SaveAnswerForm, payload)
    answer = exam_service.save_answer(
        actor, exam_id, form.attempt_id.data, form.question_id.data, payload.get('response')
    )
    return jsonify(answer)


@app.route('/api/student/exams/<exam_id>/submit', methods=['POST'])
def submit_exam(exam_id):
    actor = authorized('exam.take')
    answers = json_body().get('answers') or {}
    if not isinstance(answers, dict):
        raise ValidationError('answers must be an object keyed by question id')
    return jsonify(exam_service.submit_exam(actor, exam_id, answers))


@app.route('/api/student/exams/<exam_id>/result')
def student_exam_result(exam_id):
    return jsonify(exam_service.get_student_result(current_actor(), exam_id))


# ==================== ACADEMIC RESULTS ====================

@app.route('/api/teacher/academic-results', methods=['POST'])
def save_academic_result():
    actor = authorized('academic_result.create')
    form = validate_form(AcademicResultForm, json_body())
    return jsonify({'result': academic_service.upsert_academic_result(actor, form.data)})


@app.route('/api/teacher/academic-results/submit', methods=['POST'])
def submit_academic_results():
    actor = authorized('academic_result.submit')
    form = validate_form(ResultSelectionForm, json_body())
    args = selection_args(form)
    result = academic_service.submit_academic_results(
        actor, subject_id=form.subject_id.data or None, **args
    )
    return jsonify(result)


@app.route('/api/teacher/academic-results')
def teacher_academic_results():
    actor = authorized('academic_result.list_own')
    args = request.args
    results = academic_service.list_teacher_academic_results(
        actor, status=args.get('status'), class_id=args.get('class_id'), subject_id=args.get('subject_id'),
        term=args.get('term'), session=args.get('session'),
    )
    return jsonify({'results': results})


@app.route('/api/teacher/academic-results/<result_id>', methods=['DELETE'])
def delete_academic_result(result_id):
    actor = authorized('academic_result.delete')
    return jsonify(academic_service.delete_academic_result(actor, result_id))


@app.route('/api/admin/academic-results')
def admin_academic_results():
    actor = authorized('academic_result.list')
    args = request.args
    result = academic_service.list_academic_results(
        actor, status=args.get('status'), class_id=args.get('class_id'), subject_id=args.get('subject_id'),
        teacher_id=args.get('teacher_id'), term=args.get('term'), session=args.get('session'),
        school_id=args.get('school_id'),
    )
    return jsonify(result)


@app.route('/api/admin/academic-results/<result_id>/approve', methods=['POST'])
def approve_academic_result(result_id):
    actor = authorized('academic_result.review')
    form = validate_form(ApproveResultForm, json_body())
    result = academic_service.approve_academic_result(
        actor, result_id, form.hod_comment.data or None, form.principal_comment.data or None
    )
    return jsonify({'result': result, 'message': 'Result approved successfully'})


@app.route('/api/admin/academic-results/<result_id>/reject', methods=['POST'])
def reject_academic_result(result_id):
    actor = authorized('academic_result.review')
    form = validate_form(RejectResultForm, json_body())
    result = academic_service.reject_academic_result(actor, result_id, form.reason.data)
    return jsonify({'result': result, 'message': 'Result rejected successfully'})


@app.route('/api/admin/academic-results/publish', methods=['POST'])
def publish_academic_results():
    actor = authorized('academic_result.publish')
    form = validate_form(ResultSelectionForm, json_body())
    result = academic_service.publish_academic_results(
        actor, school_id=form.school_id.data or None, **selection_args(form)
    )
    return jsonify(result)


@app.route('/api/student/academic-results')
def student_academic_results():
    result = academic_service.get_student_academic_results(
        current_actor(), request.args.get('term'), request.args.get('session')
    )
    return jsonify(result)


@app.route('/api/admin/grading-scale', methods=['GET', 'PUT'])
def grading_scale():
    actor = authorized('grading_scale.manage')
    if request.method == 'GET':
        return jsonify({'grading_scale': academic_service.get_grading_scale(actor['school_id'])})
    bands = json_body().get('bands')
    if not isinstance(bands, list):
        raise ValidationError('bands must be a list')
    cleaned = []
    for band in bands:
        form = validate_form(GradingBandForm, band)
        cleaned.append(form.data)
    return jsonify({'grading_scale': academic_service.replace_grading_scale(actor, cleaned)})


# ==================== LESSON PLANS ====================

@app.route('/api/teacher/lesson-plans', methods=['POST'])
def create_lesson_plan():
    actor = authorized('lesson_plan.create')
    form = validate_form(LessonPlanForm, json_body())
    return jsonify({'lesson_plan': academic_service.create_lesson_plan(actor, form.data)}), 201


@app.route('/api/teacher/lesson-plans/<plan_id>', methods=['PUT'])
def update_lesson_plan(plan_id):
    actor = authorized('lesson_plan.publish')
    form = validate_form(LessonPlanForm, json_body())
    return jsonify({'lesson_plan': academic_service.update_lesson_plan(actor, plan_id, form.data)})


@app.route('/api/teacher/lesson-plans/<plan_id>/publish', methods=['POST'])
def publish_lesson_plan(plan_id):
    return jsonify({'lesson_plan': academic_service.publish_lesson_plan(current_actor(), plan_id)})


@app.route('/api/school/lesson-plans/<plan_id>/review', methods=['PUT'])
def review_lesson_plan(plan_id):
    actor = authorized('lesson_plan.review')
    form = validate_form(LessonPlanReviewForm, json_body())
    result = academic_service.review_lesson_plan(
        actor, plan_id, form.review_status.data, form.review_notes.data or ''
    )
    return jsonify(result)


# ==================== PAYMENTS ====================

@app.route('/api/payments/initialize', methods=['POST'])
def initialize_payment():
    actor = authorized('payment.initialize')
    form = validate_form(PaymentForm, json_body())
    currency = (form.currency.data or PAYMENT_CURRENCY).upper()
    return jsonify(payments.initialize_payment(actor, payment_client(), form.amount.data, currency))


@app.route('/api/payments/verify', methods=['POST'])
@csrf.exempt
def verify_payment():
    form = validate_form(VerifyPaymentForm, json_body())
    return jsonify(payments.verify_payment(payment_client(), form.reference.data.strip()))


if __name__ == '__main__':
    app.run(debug=ALLOW_INSECURE_DEFAULTS)
