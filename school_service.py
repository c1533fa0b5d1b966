"""
Schools, user accounts and login.

A school registers itself as PENDING together with its first school admin;
a super admin then moves it through SCHOOL_WORKFLOW. Only users of APPROVED
schools (and super admins, who have no school) can log in.
"""

from datetime import timedelta
import logging
import re

from werkzeug.security import check_password_hash, generate_password_hash

from access_policy import SCHOOL_ADMIN, STUDENT, SUPER_ADMIN, TEACHER, require
from db import (
    INTEGRITY_ERRORS, db_connection, db_execute, fetch_all, fetch_one,
    format_timestamp, new_id, parse_timestamp, utcnow,
)
from errors import (
    ConflictError, ForbiddenError, NotFoundError, TooManyRequestsError,
    UnauthorizedError, ValidationError,
)
from workflows import SCHOOL_WORKFLOW, SchoolStatus

LOGIN_MAX_ATTEMPTS = 4
LOGIN_LOCK_MINUTES = 15


def slugify(name):
    return re.sub(r'[^a-z0-9]+', '-', (name or '').strip().lower()).strip('-')


def normalize_username(username):
    return (username or '').strip().lower()


def _school_json(row):
    data = dict(row)
    data['created_at'] = format_timestamp(data.get('created_at'))
    data['updated_at'] = format_timestamp(data.get('updated_at'))
    return data


def _insert_user(c, fields, role, school_id):
    user_id = new_id()
    try:
        db_execute(
            c,
            '''INSERT INTO users (id, username, password_hash, name, email, role, school_id, is_active, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)''',
            (user_id, normalize_username(fields['username']), generate_password_hash(fields['password']),
             (fields.get('name') or '').strip(), fields.get('email') or None, role, school_id,
             utcnow().isoformat()),
        )
    except INTEGRITY_ERRORS:
        raise ConflictError('Username already exists')
    return user_id


# Registration and review

def register_school(fields):
    """Create a PENDING school and its SCHOOL_ADMIN account."""
    slug = slugify(fields['name'])
    if not slug:
        raise ValidationError('School name must contain letters or digits')
    school_id = new_id()
    now = utcnow().isoformat()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if fetch_one(c, 'SELECT id FROM schools WHERE slug = ?', (slug,)):
            raise ConflictError('A school with this name already exists')
        db_execute(
            c,
            '''INSERT INTO schools (id, name, slug, email, phone, address, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)''',
            (school_id, fields['name'].strip(), slug, fields['email'].strip(), fields.get('phone') or None,
             fields.get('address') or None, SchoolStatus.PENDING.value, now, now),
        )
        admin_id = _insert_user(
            c,
            {'username': fields['admin_username'], 'password': fields['admin_password'],
             'name': fields['admin_name'], 'email': fields['email']},
            SCHOOL_ADMIN, school_id,
        )
        school = fetch_one(c, 'SELECT * FROM schools WHERE id = ?', (school_id,))
    logging.info("School registered: %s (%s), pending approval", slug, school_id)
    return {'school': _school_json(school), 'admin_user_id': admin_id}


def review_school(actor, school_id, action):
    """Approve, reject, suspend or reactivate a school."""
    require(actor, 'school.review')
    if action not in SCHOOL_WORKFLOW.actions:
        raise ValidationError(f'Invalid action: {action}')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        school = fetch_one(c, 'SELECT * FROM schools WHERE id = ?', (school_id,))
        if not school:
            raise NotFoundError('School not found')
        target = SCHOOL_WORKFLOW.next_state(school['status'], action)
        db_execute(
            c,
            'UPDATE schools SET status = ?, updated_at = ? WHERE id = ? AND status = ?',
            (target.value, utcnow().isoformat(), school_id, school['status']),
        )
        school = fetch_one(c, 'SELECT * FROM schools WHERE id = ?', (school_id,))
    logging.info("School %s: %s -> %s by %s", school_id, action, target.value, actor['user_id'])
    return _school_json(school)


def list_schools(actor, status=None):
    require(actor, 'school.review')
    sql = 'SELECT * FROM schools'
    params = ()
    if status:
        sql += ' WHERE status = ?'
        params = (status,)
    sql += ' ORDER BY created_at DESC'
    with db_connection() as conn:
        return [_school_json(row) for row in fetch_all(conn.cursor(), sql, params)]


# School structure and accounts

def _school_of(actor):
    require(actor, 'school.manage_users')
    school_id = actor.get('school_id')
    if not school_id:
        raise NotFoundError('School not found')
    return school_id


def _require_in_school(c, table, record_id, school_id, label):
    row = fetch_one(c, f'SELECT * FROM {table} WHERE id = ?', (record_id,))
    if not row:
        raise NotFoundError(f'{label} not found')
    if row['school_id'] != school_id:
        raise ForbiddenError(f'{label} does not belong to your school')
    return row


def create_class(actor, fields):
    school_id = _school_of(actor)
    class_id = new_id()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        try:
            db_execute(
                c,
                'INSERT INTO classes (id, school_id, name, section, academic_year) VALUES (?, ?, ?, ?, ?)',
                (class_id, school_id, fields['name'].strip(), (fields.get('section') or '').strip(),
                 fields.get('academic_year') or None),
            )
        except INTEGRITY_ERRORS:
            raise ConflictError('Class already exists')
        return fetch_one(c, 'SELECT * FROM classes WHERE id = ?', (class_id,))


def create_subject(actor, fields):
    school_id = _school_of(actor)
    subject_id = new_id()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        try:
            db_execute(
                c,
                'INSERT INTO subjects (id, school_id, name, code) VALUES (?, ?, ?, ?)',
                (subject_id, school_id, fields['name'].strip(), fields.get('code') or None),
            )
        except INTEGRITY_ERRORS:
            raise ConflictError('Subject already exists')
        return fetch_one(c, 'SELECT * FROM subjects WHERE id = ?', (subject_id,))


def create_teacher(actor, fields):
    """Create a TEACHER user and its teacher profile."""
    school_id = _school_of(actor)
    teacher_id = new_id()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        user_id = _insert_user(c, fields, TEACHER, school_id)
        db_execute(
            c,
            'INSERT INTO teachers (id, user_id, school_id, employee_id) VALUES (?, ?, ?, ?)',
            (teacher_id, user_id, school_id, fields.get('employee_id') or None),
        )
    logging.info("Teacher %s created in school %s", teacher_id, school_id)
    return {'teacher_id': teacher_id, 'user_id': user_id, 'username': normalize_username(fields['username'])}


def create_student(actor, fields):
    """Create a STUDENT user and its student profile in one class."""
    school_id = _school_of(actor)
    student_id = new_id()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _require_in_school(c, 'classes', fields['class_id'], school_id, 'Class')
        user_id = _insert_user(c, fields, STUDENT, school_id)
        db_execute(
            c,
            'INSERT INTO students (id, user_id, school_id, class_id, reg_number) VALUES (?, ?, ?, ?, ?)',
            (student_id, user_id, school_id, fields['class_id'], fields.get('reg_number') or None),
        )
    logging.info("Student %s created in school %s", student_id, school_id)
    return {'student_id': student_id, 'user_id': user_id, 'username': normalize_username(fields['username'])}


def assign_class_subject(actor, class_id, subject_id, teacher_id):
    """Make `teacher_id` the teacher of a subject in a class, replacing any previous one."""
    school_id = _school_of(actor)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _require_in_school(c, 'classes', class_id, school_id, 'Class')
        _require_in_school(c, 'subjects', subject_id, school_id, 'Subject')
        _require_in_school(c, 'teachers', teacher_id, school_id, 'Teacher')
        db_execute(
            c,
            '''INSERT INTO class_subjects (id, school_id, class_id, subject_id, teacher_id)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT (class_id, subject_id) DO UPDATE SET teacher_id = excluded.teacher_id''',
            (new_id(), school_id, class_id, subject_id, teacher_id),
        )
        return fetch_one(
            c,
            'SELECT * FROM class_subjects WHERE class_id = ? AND subject_id = ?',
            (class_id, subject_id),
        )


# User administration

def _user_json(row):
    user = {k: row[k] for k in ('id', 'username', 'name', 'email', 'role', 'school_id')}
    user['is_active'] = bool(row['is_active'])
    user['last_login_at'] = format_timestamp(row['last_login_at'])
    return user


def _load_managed_user(c, actor, user_id):
    user = fetch_one(c, 'SELECT * FROM users WHERE id = ?', (user_id,))
    if not user:
        raise NotFoundError('User not found')
    if user['role'] == SUPER_ADMIN and actor['role'] != SUPER_ADMIN:
        raise ForbiddenError('You can only access records from your school')
    require(actor, 'user.manage', {'school_id': user['school_id']})
    return user


def list_users(actor, role=None, school_id=None):
    require(actor, 'user.manage')
    scope_school = school_id if actor['role'] == SUPER_ADMIN else actor.get('school_id')
    if actor['role'] != SUPER_ADMIN and not scope_school:
        raise NotFoundError('School not found')
    sql = 'SELECT * FROM users WHERE 1 = 1'
    params = ()
    if scope_school:
        sql += ' AND school_id = ?'
        params += (scope_school,)
    if role:
        sql += ' AND role = ?'
        params += (role,)
    sql += ' ORDER BY role, name, username'
    with db_connection() as conn:
        return [_user_json(row) for row in fetch_all(conn.cursor(), sql, params)]


def set_user_active(actor, user_id, active):
    """Suspend (active=False) or reactivate a user. Suspended users cannot log in."""
    verb = 'reactivate' if active else 'suspend'
    if user_id == actor.get('user_id'):
        raise ValidationError(f'Cannot {verb} your own account')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        user = _load_managed_user(c, actor, user_id)
        if bool(user['is_active']) == active:
            raise ConflictError(f"User is already {'active' if active else 'suspended'}")
        db_execute(c, 'UPDATE users SET is_active = ? WHERE id = ?', (1 if active else 0, user_id))
        user = fetch_one(c, 'SELECT * FROM users WHERE id = ?', (user_id,))
    logging.info("User %s %s by %s", user_id, 'reactivated' if active else 'suspended', actor['user_id'])
    return _user_json(user)


def reset_user_password(actor, user_id, new_password):
    if len(new_password or '') < 8:
        raise ValidationError('Password must be at least 8 characters long')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _load_managed_user(c, actor, user_id)
        db_execute(c, 'UPDATE users SET password_hash = ? WHERE id = ?',
                   (generate_password_hash(new_password), user_id))
    logging.info("Password reset for user %s by %s", user_id, actor['user_id'])
    return {'message': 'Password reset successfully'}


# Login

def is_login_blocked(username, ip_address, now=None):
    """Return (blocked, wait_minutes)."""
    now = now or utcnow()
    with db_connection() as conn:
        row = fetch_one(
            conn.cursor(),
            'SELECT locked_until FROM login_attempts WHERE username = ? AND ip_address = ?',
            (normalize_username(username), ip_address),
        )
    locked_until = parse_timestamp(row['locked_until']) if row else None
    if locked_until and locked_until > now:
        remaining = (locked_until - now).total_seconds()
        return True, max(1, int(remaining // 60) + (1 if remaining % 60 else 0))
    return False, 0


def register_failed_login(username, ip_address, now=None):
    """Count a failed login; lock the pair after LOGIN_MAX_ATTEMPTS inside the window."""
    now = now or utcnow()
    username = normalize_username(username)
    window_start = now - timedelta(minutes=LOGIN_LOCK_MINUTES)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        row = fetch_one(
            c,
            'SELECT * FROM login_attempts WHERE username = ? AND ip_address = ?',
            (username, ip_address),
        )
        if not row:
            db_execute(
                c,
                '''INSERT INTO login_attempts (id, username, ip_address, failures, last_failed_at, locked_until)
                   VALUES (?, ?, ?, 1, ?, NULL)''',
                (new_id(), username, ip_address, now.isoformat()),
            )
            return
        last_failed_at = parse_timestamp(row['last_failed_at'])
        failures = 1 if not last_failed_at or last_failed_at < window_start else int(row['failures'] or 0) + 1
        locked_until = None
        if failures >= LOGIN_MAX_ATTEMPTS:
            locked_until = (now + timedelta(minutes=LOGIN_LOCK_MINUTES)).isoformat()
            logging.warning("Login locked for %s from %s", username, ip_address)
        db_execute(
            c,
            'UPDATE login_attempts SET failures = ?, last_failed_at = ?, locked_until = ? WHERE id = ?',
            (failures, now.isoformat(), locked_until, row['id']),
        )


def clear_failed_login(username, ip_address):
    with db_connection(commit=True) as conn:
        db_execute(
            conn.cursor(),
            'DELETE FROM login_attempts WHERE username = ? AND ip_address = ?',
            (normalize_username(username), ip_address),
        )


def load_actor(user_id):
    """Session view of a user: ids of the user, its school and its teacher/student profile."""
    with db_connection() as conn:
        c = conn.cursor()
        user = fetch_one(c, 'SELECT * FROM users WHERE id = ?', (user_id,))
        if not user:
            return None
        teacher = fetch_one(c, 'SELECT id FROM teachers WHERE user_id = ?', (user_id,))
        student = fetch_one(c, 'SELECT id FROM students WHERE user_id = ?', (user_id,))
    return {
        'user_id': user['id'],
        'username': user['username'],
        'name': user['name'],
        'role': user['role'],
        'school_id': user['school_id'],
        'teacher_id': teacher['id'] if teacher else None,
        'student_id': student['id'] if student else None,
    }


def authenticate(username, password, ip_address='unknown'):
    """Check credentials and return the actor for a new session."""
    username = normalize_username(username)
    blocked, wait_minutes = is_login_blocked(username, ip_address)
    if blocked:
        raise TooManyRequestsError(
            f'Too many failed login attempts. Try again in about {wait_minutes} minute(s).'
        )
    with db_connection() as conn:
        c = conn.cursor()
        user = fetch_one(c, 'SELECT * FROM users WHERE username = ?', (username,))
        school = None
        if user and user['school_id']:
            school = fetch_one(c, 'SELECT status FROM schools WHERE id = ?', (user['school_id'],))

    if not user or not check_password_hash(user['password_hash'], password):
        register_failed_login(username, ip_address)
        raise UnauthorizedError('Invalid username or password.')
    if not user['is_active']:
        raise ForbiddenError('Account is suspended. Contact your administrator.')
    if user['role'] != SUPER_ADMIN:
        if not school:
            raise ForbiddenError('Account is missing school assignment. Contact administrator.')
        if school['status'] != SchoolStatus.APPROVED.value:
            raise ForbiddenError(f"School is not active (status: {school['status']}).")

    clear_failed_login(username, ip_address)
    with db_connection(commit=True) as conn:
        db_execute(conn.cursor(), 'UPDATE users SET last_login_at = ? WHERE id = ?',
                   (utcnow().isoformat(), user['id']))
    return load_actor(user['id'])


def set_password(username, new_password):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'UPDATE users SET password_hash = ? WHERE username = ?',
                   (generate_password_hash(new_password), normalize_username(username)))
        return c.rowcount


def bootstrap_super_admin(username, password):
    """Ensure the super admin account exists; never reset its password or re-role another user."""
    username = normalize_username(username)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        row = fetch_one(c, 'SELECT id, role FROM users WHERE username = ?', (username,))
        if not row:
            _insert_user(c, {'username': username, 'password': password, 'name': 'Super Admin'},
                         SUPER_ADMIN, None)
            logging.info("Super admin user created: %s", username)
            return True
    if row['role'] != SUPER_ADMIN:
        logging.warning(
            "SUPER_ADMIN_USERNAME '%s' exists with role '%s'; skipping automatic role escalation.",
            username, row['role'],
        )
    return False
