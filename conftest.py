import json
from datetime import timedelta
from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

import db
from db import db_connection, db_execute, new_id, utcnow


def insert_row(table, **values):
    values.setdefault('id', new_id())
    columns = ', '.join(values)
    marks = ', '.join('?' for _ in values)
    with db_connection(commit=True) as conn:
        db_execute(conn.cursor(), f'INSERT INTO {table} ({columns}) VALUES ({marks})', tuple(values.values()))
    return values['id']


@pytest.fixture
def database(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cbt.db'}")
    db.init_db()
    return tmp_path / 'cbt.db'


@pytest.fixture
def insert(database):
    return insert_row


def _user(role, school_id, username, password='password123'):
    return insert_row(
        'users', username=username, password_hash=generate_password_hash(password),
        name=username.title(), role=role, school_id=school_id, is_active=1,
    )


@pytest.fixture
def world(database):
    """One approved school with an admin, two teachers, a class, a subject and two students."""
    school_id = insert_row('schools', name='Green Hill', slug='green-hill', email='gh@example.com', status='APPROVED')
    other_school_id = insert_row('schools', name='Blue Lake', slug='blue-lake', email='bl@example.com', status='APPROVED')
    admin_user = _user('SCHOOL_ADMIN', school_id, 'admin')
    other_admin_user = _user('SCHOOL_ADMIN', other_school_id, 'otheradmin')
    super_user = _user('SUPER_ADMIN', None, 'root')

    teacher_user = _user('TEACHER', school_id, 'teacher')
    teacher_id = insert_row('teachers', user_id=teacher_user, school_id=school_id)
    other_teacher_user = _user('TEACHER', school_id, 'teacher2')
    other_teacher_id = insert_row('teachers', user_id=other_teacher_user, school_id=school_id)

    class_id = insert_row('classes', school_id=school_id, name='JSS1', section='A')
    other_class_id = insert_row('classes', school_id=school_id, name='JSS2', section='A')
    subject_id = insert_row('subjects', school_id=school_id, name='Mathematics')
    insert_row('class_subjects', school_id=school_id, class_id=class_id, subject_id=subject_id, teacher_id=teacher_id)

    student_user = _user('STUDENT', school_id, 'ada')
    student_id = insert_row('students', user_id=student_user, school_id=school_id, class_id=class_id, reg_number='GH/001')
    student2_user = _user('STUDENT', school_id, 'bola')
    student2_id = insert_row('students', user_id=student2_user, school_id=school_id, class_id=class_id, reg_number='GH/002')

    return SimpleNamespace(
        school_id=school_id,
        other_school_id=other_school_id,
        class_id=class_id,
        other_class_id=other_class_id,
        subject_id=subject_id,
        teacher_id=teacher_id,
        other_teacher_id=other_teacher_id,
        student_id=student_id,
        student2_id=student2_id,
        admin={'user_id': admin_user, 'role': 'SCHOOL_ADMIN', 'school_id': school_id},
        other_admin={'user_id': other_admin_user, 'role': 'SCHOOL_ADMIN', 'school_id': other_school_id},
        super_admin={'user_id': super_user, 'role': 'SUPER_ADMIN', 'school_id': None},
        teacher={'user_id': teacher_user, 'role': 'TEACHER', 'school_id': school_id, 'teacher_id': teacher_id},
        other_teacher={'user_id': other_teacher_user, 'role': 'TEACHER', 'school_id': school_id,
                       'teacher_id': other_teacher_id},
        student={'user_id': student_user, 'role': 'STUDENT', 'school_id': school_id, 'student_id': student_id},
        student2={'user_id': student2_user, 'role': 'STUDENT', 'school_id': school_id, 'student_id': student2_id},
    )


@pytest.fixture
def make_exam(world):
    """Insert an exam with an MCQ worth 10 and a TRUE_FALSE worth 20; returns (exam_id, [q1, q2])."""
    def _make(**overrides):
        now = utcnow()
        values = dict(
            school_id=world.school_id, teacher_id=world.teacher_id, subject_id=world.subject_id,
            class_id=world.class_id, title='Maths test', description='', duration=60, max_attempts=1,
            start_time=(now - timedelta(hours=1)).isoformat(), end_time=(now + timedelta(hours=1)).isoformat(),
            status='APPROVED', is_live=0, is_completed=0, manual_control=0, show_results_immediately=1,
        )
        values.update(overrides)
        exam_id = insert_row('exams', **values)
        q1 = insert_row('questions', exam_id=exam_id, text='2 + 2?', type='MCQ',
                        options=json.dumps(['3', '4', '5']), correct_answer=json.dumps('4'),
                        points=10, order_index=0)
        q2 = insert_row('questions', exam_id=exam_id, text='Zero is even.', type='TRUE_FALSE',
                        options=None, correct_answer=json.dumps(True), points=20, order_index=1)
        return exam_id, [q1, q2]
    return _make
