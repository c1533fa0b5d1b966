"""
WTForms definitions for JSON request bodies.

Bodies are flattened into a werkzeug MultiDict so the usual WTForms coercion
and validators apply to JSON exactly as they do to posted forms. Lists use the
FieldList naming convention (`name-0`, `name-1`, ...).
"""

from werkzeug.datastructures import MultiDict
from wtforms import (
    BooleanField, FieldList, FloatField, Form, IntegerField, PasswordField,
    SelectField, StringField, TextAreaField, validators,
)

from errors import ValidationError


def json_to_formdata(payload):
    formdata = MultiDict()
    for key, value in (payload or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                formdata.add(f'{key}-{index}', '' if item is None else str(item))
        elif isinstance(value, bool):
            formdata.add(key, 'y' if value else '')
        else:
            formdata.add(key, str(value))
    return formdata


def validate_form(form_cls, payload):
    """Build and validate a form from a JSON object; raise ValidationError on the first error."""
    if payload is not None and not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object.')
    form = form_cls(formdata=json_to_formdata(payload))
    if not form.validate():
        for field_name, errors in form.errors.items():
            message = errors[0] if isinstance(errors, list) and errors else errors
            if isinstance(message, list):
                message = message[0] if message else 'Invalid value.'
            raise ValidationError(f"{field_name}: {message}")
    return form


class LoginForm(Form):
    username = StringField('Username', [validators.DataRequired(), validators.Length(max=150)])
    password = PasswordField('Password', [validators.DataRequired()])


class SchoolRegistrationForm(Form):
    name = StringField('School name', [validators.DataRequired(), validators.Length(min=2, max=200)])
    email = StringField('Email', [
        validators.DataRequired(),
        validators.Regexp(r'^[^@\s]+@[^@\s]+\.[^@\s]+$', message='Enter a valid email address.'),
    ])
    phone = StringField('Phone', [validators.Optional(), validators.Length(max=40)])
    address = StringField('Address', [validators.Optional(), validators.Length(max=300)])
    admin_name = StringField('Admin name', [validators.DataRequired(), validators.Length(max=150)])
    admin_username = StringField('Admin username', [validators.DataRequired(), validators.Length(min=3, max=150)])
    admin_password = PasswordField('Admin password', [validators.DataRequired(), validators.Length(min=8)])


class ClassForm(Form):
    name = StringField('Class name', [validators.DataRequired(), validators.Length(max=100)])
    section = StringField('Section', [validators.Optional(), validators.Length(max=20)])
    academic_year = StringField('Academic year', [validators.Optional(), validators.Length(max=20)])


class SubjectForm(Form):
    name = StringField('Subject name', [validators.DataRequired(), validators.Length(max=100)])
    code = StringField('Code', [validators.Optional(), validators.Length(max=20)])


class PersonForm(Form):
    name = StringField('Name', [validators.DataRequired(), validators.Length(max=150)])
    username = StringField('Username', [validators.DataRequired(), validators.Length(min=3, max=150)])
    password = PasswordField('Password', [validators.DataRequired(), validators.Length(min=8)])
    email = StringField('Email', [validators.Optional(), validators.Length(max=200)])


class TeacherForm(PersonForm):
    employee_id = StringField('Employee ID', [validators.Optional(), validators.Length(max=50)])


class StudentForm(PersonForm):
    class_id = StringField('Class', [validators.DataRequired()])
    reg_number = StringField('Registration number', [validators.Optional(), validators.Length(max=50)])


class ClassSubjectForm(Form):
    class_id = StringField('Class', [validators.DataRequired()])
    subject_id = StringField('Subject', [validators.DataRequired()])
    teacher_id = StringField('Teacher', [validators.DataRequired()])


class ExamForm(Form):
    title = StringField('Title', [validators.DataRequired(), validators.Length(max=200)])
    description = TextAreaField('Description', [validators.Optional()])
    subject_id = StringField('Subject', [validators.Optional()])
    class_id = StringField('Class', [validators.Optional()])
    start_time = StringField('Start time', [validators.DataRequired()])
    end_time = StringField('End time', [validators.DataRequired()])
    duration = IntegerField('Duration', [validators.DataRequired(), validators.NumberRange(min=1)])
    max_attempts = IntegerField('Max attempts', [validators.Optional(), validators.NumberRange(min=1)], default=1)
    passing_marks = FloatField('Passing marks', [validators.Optional(), validators.NumberRange(min=0)])
    show_results_immediately = BooleanField('Show results immediately')


class ExamReviewForm(Form):
    action = SelectField('Action', choices=[('approve', 'approve'), ('reject', 'reject')])
    rejection_reason = TextAreaField('Rejection reason', [validators.Optional(), validators.Length(max=1000)])
    publish_now = BooleanField('Publish now')


class ResetAttemptsForm(Form):
    student_id = StringField('Student', [validators.Optional()])
    reset_all = BooleanField('Reset all')


class ManualControlForm(Form):
    action = SelectField('Action', choices=[
        ('make_live', 'make_live'),
        ('make_completed', 'make_completed'),
        ('toggle_manual_control', 'toggle_manual_control'),
    ])
    enable_manual_control = BooleanField('Enable manual control')


class SaveAnswerForm(Form):
    question_id = StringField('Question', [validators.DataRequired()])
    attempt_id = StringField('Attempt', [validators.DataRequired()])


class GradeAnswerForm(Form):
    student_id = StringField('Student', [validators.DataRequired()])
    question_id = StringField('Question', [validators.DataRequired()])
    points_awarded = FloatField('Points awarded', [validators.InputRequired(), validators.NumberRange(min=0)])


class AcademicResultForm(Form):
    student_id = StringField('Student', [validators.DataRequired()])
    subject_id = StringField('Subject', [validators.DataRequired()])
    class_id = StringField('Class', [validators.DataRequired()])
    term = StringField('Term', [validators.DataRequired(), validators.Length(max=50)])
    session = StringField('Session', [validators.DataRequired(), validators.Length(max=20)])
    ca_score = FloatField('CA score', [
        validators.InputRequired(message='CA score and Exam score are required'),
        validators.NumberRange(min=0, max=40, message='CA score must be between 0 and 40'),
    ])
    exam_score = FloatField('Exam score', [
        validators.InputRequired(message='CA score and Exam score are required'),
        validators.NumberRange(min=0, max=60, message='Exam score must be between 0 and 60'),
    ])
    teacher_comment = TextAreaField('Teacher comment', [validators.Optional(), validators.Length(max=1000)])


class ResultSelectionForm(Form):
    """Either an explicit id list or a class/term/session filter."""
    result_ids = FieldList(StringField('Result'))
    class_id = StringField('Class', [validators.Optional()])
    subject_id = StringField('Subject', [validators.Optional()])
    term = StringField('Term', [validators.Optional()])
    session = StringField('Session', [validators.Optional()])
    school_id = StringField('School', [validators.Optional()])


class ApproveResultForm(Form):
    hod_comment = TextAreaField('HOD comment', [validators.Optional(), validators.Length(max=1000)])
    principal_comment = TextAreaField('Principal comment', [validators.Optional(), validators.Length(max=1000)])


class RejectResultForm(Form):
    reason = TextAreaField('Reason', [
        validators.DataRequired(message='Rejection reason is required'),
        validators.Length(max=1000),
    ])


class GradingBandForm(Form):
    min_score = FloatField('Min score', [validators.InputRequired(), validators.NumberRange(min=0, max=100)])
    max_score = FloatField('Max score', [validators.InputRequired(), validators.NumberRange(min=0, max=100)])
    grade = StringField('Grade', [validators.DataRequired(), validators.Length(max=5)])
    grade_point = FloatField('Grade point', [validators.InputRequired(), validators.NumberRange(min=0)])
    remark = StringField('Remark', [validators.Optional(), validators.Length(max=50)])


class LessonPlanForm(Form):
    title = StringField('Title', [validators.DataRequired(), validators.Length(max=200)])
    content = TextAreaField('Content', [validators.Optional()])
    subject_id = StringField('Subject', [validators.Optional()])
    class_id = StringField('Class', [validators.Optional()])


class LessonPlanReviewForm(Form):
    review_status = SelectField('Review status', choices=[
        ('APPROVED', 'APPROVED'),
        ('REJECTED', 'REJECTED'),
        ('NEEDS_REVISION', 'NEEDS_REVISION'),
    ])
    review_notes = TextAreaField('Review notes', [validators.Optional(), validators.Length(max=2000)])


class PaymentForm(Form):
    amount = FloatField('Amount', [
        validators.InputRequired(),
        validators.NumberRange(min=100, message='Minimum amount is 100'),
    ])
    currency = StringField('Currency', [validators.Optional(), validators.Length(min=3, max=3)])


class VerifyPaymentForm(Form):
    reference = StringField('Reference', [validators.DataRequired(message='Payment reference is required')])


class ResetPasswordForm(Form):
    new_password = PasswordField('New password', [
        validators.DataRequired(message='New password is required'),
        validators.Length(min=8, message='Password must be at least 8 characters long'),
    ])
