from contextlib import contextmanager
from datetime import datetime, timezone
import os
import sqlite3
import uuid

import psycopg2
from psycopg2.extras import DictCursor

INTEGRITY_ERRORS = (sqlite3.IntegrityError, psycopg2.IntegrityError)


def get_database_url():
    url = (os.environ.get("DATABASE_URL") or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    return url


def is_sqlite_url(url):
    return url.startswith("sqlite:///")


def is_postgres_url(url):
    return url.startswith(("postgres://", "postgresql://"))


def _adapt_query(query, url):
    if is_sqlite_url(url):
        return query
    return query.replace('?', '%s')


def get_db():
    """Open a DB-API connection for DATABASE_URL (PostgreSQL or SQLite)."""
    url = get_database_url()
    if is_sqlite_url(url):
        conn = sqlite3.connect(url[len("sqlite:///"):], timeout=10)
        conn.execute('PRAGMA foreign_keys = ON')
        return conn
    if is_postgres_url(url):
        return psycopg2.connect(url, cursor_factory=DictCursor, connect_timeout=10)
    raise RuntimeError("Unsupported DATABASE_URL. Use postgresql:// or sqlite:///")


@contextmanager
def db_connection(commit=False):
    """Yield a connection; commit on success when asked, roll back on any error."""
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def db_execute(cursor, query, params=None):
    query = _adapt_query(query, get_database_url())
    if params is None:
        return cursor.execute(query)
    return cursor.execute(query, params)


def fetch_one(cursor, query, params=None):
    """Run a query and return the first row as a dict, or None."""
    db_execute(cursor, query, params)
    row = cursor.fetchone()
    if row is None:
        return None
    columns = [col[0] for col in cursor.description]
    return dict(zip(columns, row))


def fetch_all(cursor, query, params=None):
    db_execute(cursor, query, params)
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def new_id():
    return uuid.uuid4().hex


def utcnow():
    """Current time as naive UTC, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value):
    """Read a stored or submitted timestamp back into a naive UTC datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_timestamp(value):
    parsed = parse_timestamp(value)
    return parsed.isoformat() if parsed else None


SCHEMA_STATEMENTS = [
    # Schools register as PENDING and are approved by a super admin
    '''CREATE TABLE IF NOT EXISTS schools (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT UNIQUE NOT NULL,
        email TEXT NOT NULL,
        phone TEXT,
        address TEXT,
        status TEXT NOT NULL DEFAULT 'PENDING',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )''',
    # Users table with roles: SUPER_ADMIN, SCHOOL_ADMIN, TEACHER, STUDENT
    '''CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        email TEXT,
        role TEXT NOT NULL,
        school_id TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        last_login_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )''',
    '''CREATE TABLE IF NOT EXISTS classes (
        id TEXT PRIMARY KEY,
        school_id TEXT NOT NULL,
        name TEXT NOT NULL,
        section TEXT NOT NULL DEFAULT '',
        academic_year TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(school_id, name, section)
    )''',
    '''CREATE TABLE IF NOT EXISTS subjects (
        id TEXT PRIMARY KEY,
        school_id TEXT NOT NULL,
        name TEXT NOT NULL,
        code TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(school_id, name)
    )''',
    '''CREATE TABLE IF NOT EXISTS teachers (
        id TEXT PRIMARY KEY,
        user_id TEXT UNIQUE NOT NULL,
        school_id TEXT NOT NULL,
        employee_id TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )''',
    '''CREATE TABLE IF NOT EXISTS students (
        id TEXT PRIMARY KEY,
        user_id TEXT UNIQUE NOT NULL,
        school_id TEXT NOT NULL,
        class_id TEXT,
        reg_number TEXT,
        last_exam_taken TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )''',
    # Which teacher teaches which subject in which class
    '''CREATE TABLE IF NOT EXISTS class_subjects (
        id TEXT PRIMARY KEY,
        school_id TEXT NOT NULL,
        class_id TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        teacher_id TEXT,
        UNIQUE(class_id, subject_id)
    )''',
    '''CREATE TABLE IF NOT EXISTS exams (
        id TEXT PRIMARY KEY,
        school_id TEXT NOT NULL,
        teacher_id TEXT NOT NULL,
        subject_id TEXT,
        class_id TEXT,
        title TEXT NOT NULL,
        description TEXT,
        start_time TIMESTAMP NOT NULL,
        end_time TIMESTAMP NOT NULL,
        duration INTEGER NOT NULL DEFAULT 60,
        max_attempts INTEGER NOT NULL DEFAULT 1,
        passing_marks REAL,
        status TEXT NOT NULL DEFAULT 'DRAFT',
        rejection_reason TEXT,
        approved_by TEXT,
        approved_at TIMESTAMP,
        is_live INTEGER NOT NULL DEFAULT 0,
        is_completed INTEGER NOT NULL DEFAULT 0,
        manual_control INTEGER NOT NULL DEFAULT 0,
        show_results_immediately INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )''',
    # options and correct_answer hold JSON text
    '''CREATE TABLE IF NOT EXISTS questions (
        id TEXT PRIMARY KEY,
        exam_id TEXT NOT NULL REFERENCES exams(id) ON DELETE CASCADE,
        text TEXT NOT NULL,
        type TEXT NOT NULL,
        options TEXT,
        correct_answer TEXT,
        points REAL NOT NULL DEFAULT 1,
        order_index INTEGER NOT NULL DEFAULT 0,
        explanation TEXT
    )''',
    '''CREATE TABLE IF NOT EXISTS exam_attempts (
        id TEXT PRIMARY KEY,
        exam_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        attempt_number INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'IN_PROGRESS',
        started_at TIMESTAMP NOT NULL,
        submitted_at TIMESTAMP,
        time_spent INTEGER,
        UNIQUE(student_id, exam_id, attempt_number)
    )''',
    '''CREATE TABLE IF NOT EXISTS answers (
        id TEXT PRIMARY KEY,
        student_id TEXT NOT NULL,
        exam_id TEXT NOT NULL,
        question_id TEXT NOT NULL,
        attempt_id TEXT,
        response TEXT,
        points_awarded REAL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP,
        UNIQUE(student_id, exam_id, question_id)
    )''',
    '''CREATE TABLE IF NOT EXISTS results (
        id TEXT PRIMARY KEY,
        student_id TEXT NOT NULL,
        exam_id TEXT NOT NULL,
        score REAL NOT NULL,
        graded_at TIMESTAMP NOT NULL,
        UNIQUE(student_id, exam_id)
    )''',
    '''CREATE TABLE IF NOT EXISTS academic_results (
        id TEXT PRIMARY KEY,
        school_id TEXT NOT NULL,
        teacher_id TEXT NOT NULL,
        student_id TEXT NOT NULL,
        subject_id TEXT NOT NULL,
        class_id TEXT NOT NULL,
        term TEXT NOT NULL,
        session TEXT NOT NULL,
        ca_score REAL NOT NULL DEFAULT 0,
        exam_score REAL NOT NULL DEFAULT 0,
        total_score REAL NOT NULL DEFAULT 0,
        grade TEXT,
        grade_point REAL NOT NULL DEFAULT 0,
        remark TEXT,
        teacher_comment TEXT,
        hod_comment TEXT,
        principal_comment TEXT,
        status TEXT NOT NULL DEFAULT 'DRAFT',
        submitted_at TIMESTAMP,
        approved_by TEXT,
        approved_at TIMESTAMP,
        published_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(student_id, subject_id, term, session)
    )''',
    '''CREATE TABLE IF NOT EXISTS grading_scales (
        id TEXT PRIMARY KEY,
        school_id TEXT NOT NULL,
        min_score REAL NOT NULL,
        max_score REAL NOT NULL,
        grade TEXT NOT NULL,
        grade_point REAL NOT NULL,
        remark TEXT NOT NULL DEFAULT '',
        is_active INTEGER NOT NULL DEFAULT 1
    )''',
    '''CREATE TABLE IF NOT EXISTS lesson_plans (
        id TEXT PRIMARY KEY,
        school_id TEXT NOT NULL,
        teacher_id TEXT NOT NULL,
        subject_id TEXT,
        class_id TEXT,
        title TEXT NOT NULL,
        content TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'DRAFT',
        review_status TEXT NOT NULL DEFAULT 'PENDING',
        review_notes TEXT,
        reviewed_by TEXT,
        reviewed_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )''',
    '''CREATE TABLE IF NOT EXISTS payments (
        id TEXT PRIMARY KEY,
        school_id TEXT NOT NULL,
        amount REAL NOT NULL,
        currency TEXT NOT NULL DEFAULT 'NGN',
        status TEXT NOT NULL DEFAULT 'PENDING',
        reference TEXT UNIQUE NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )''',
    # Failed logins per (username, ip); a row with locked_until in the future blocks login
    '''CREATE TABLE IF NOT EXISTS login_attempts (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        ip_address TEXT NOT NULL,
        failures INTEGER NOT NULL DEFAULT 0,
        last_failed_at TIMESTAMP,
        locked_until TIMESTAMP,
        UNIQUE (username, ip_address)
    )''',
    'CREATE INDEX IF NOT EXISTS idx_users_school ON users(school_id)',
    'CREATE INDEX IF NOT EXISTS idx_students_school_class ON students(school_id, class_id)',
    'CREATE INDEX IF NOT EXISTS idx_exams_school ON exams(school_id)',
    'CREATE INDEX IF NOT EXISTS idx_questions_exam ON questions(exam_id)',
    'CREATE INDEX IF NOT EXISTS idx_attempts_exam ON exam_attempts(exam_id, status)',
    'CREATE INDEX IF NOT EXISTS idx_answers_exam ON answers(exam_id)',
    'CREATE INDEX IF NOT EXISTS idx_results_exam ON results(exam_id)',
    'CREATE INDEX IF NOT EXISTS idx_academic_results_filter ON academic_results(school_id, class_id, term, session)',
    'CREATE INDEX IF NOT EXISTS idx_lesson_plans_school ON lesson_plans(school_id, status)',
    'CREATE INDEX IF NOT EXISTS idx_payments_school ON payments(school_id)',
]

SCHEMA_TABLES = [
    'login_attempts', 'payments', 'lesson_plans', 'grading_scales', 'academic_results', 'results',
    'answers', 'exam_attempts', 'questions', 'exams', 'class_subjects',
    'students', 'teachers', 'subjects', 'classes', 'users', 'schools',
]


def init_db():
    """
    Creates all required tables if they don't exist.
    """
    with db_connection(commit=True) as conn:
        cursor = conn.cursor()
        for statement in SCHEMA_STATEMENTS:
            db_execute(cursor, statement)
