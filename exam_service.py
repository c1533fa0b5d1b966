"""
Exam authoring, exam taking, submission and scoring, attempt resets and
manual lifecycle control.

Every function takes the caller as an `actor` dict (see access_policy) and
raises errors.ServiceError subclasses; multi-step writes run in one
db_connection(commit=True) block so they commit or roll back together.
"""

import json
import logging

from access_policy import SCHOOL_ADMIN, TEACHER, require, require_profile
from db import (
    INTEGRITY_ERRORS, db_connection, db_execute, fetch_all, fetch_one,
    format_timestamp, new_id, parse_timestamp, utcnow,
)
from errors import ConflictError, NotFoundError, ValidationError
from scoring import FREE_TEXT_TYPES, calculate_score, exam_status, percentage, safe_float
from workflows import ATTEMPT_WORKFLOW, EXAM_WORKFLOW, AttemptStatus, ExamStatus, QuestionType

TAKEABLE_STATUSES = (ExamStatus.APPROVED.value, ExamStatus.PUBLISHED.value)
ACTIVE_ATTEMPT_STATUSES = (AttemptStatus.IN_PROGRESS.value, AttemptStatus.SUBMITTED.value)
EXAM_FLAGS = ('is_live', 'is_completed', 'manual_control', 'show_results_immediately')


def _loads(value):
    if value is None or value == '':
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return value


def _exam_from_row(row):
    if row is None:
        return None
    exam = dict(row)
    for flag in EXAM_FLAGS:
        exam[flag] = bool(int(exam.get(flag) or 0))
    for key in ('start_time', 'end_time', 'approved_at', 'created_at', 'updated_at'):
        exam[key] = parse_timestamp(exam.get(key))
    return exam


def _question_from_row(row):
    question = dict(row)
    question['options'] = _loads(question.get('options'))
    question['correct_answer'] = _loads(question.get('correct_answer'))
    question['points'] = safe_float(question.get('points'))
    return question


def _answer_from_row(row):
    answer = dict(row)
    answer['response'] = _loads(answer.get('response'))
    return answer


def _exam_json(exam):
    data = dict(exam)
    for key in ('start_time', 'end_time', 'approved_at', 'created_at', 'updated_at'):
        data[key] = format_timestamp(data.get(key))
    return data


def _public_question(question):
    return {k: v for k, v in question.items() if k not in ('correct_answer', 'explanation')}


def _load_exam(c, exam_id):
    return _exam_from_row(fetch_one(c, 'SELECT * FROM exams WHERE id = ?', (exam_id,)))


def _load_questions(c, exam_id):
    rows = fetch_all(c, 'SELECT * FROM questions WHERE exam_id = ? ORDER BY order_index, id', (exam_id,))
    return [_question_from_row(row) for row in rows]


def _load_answers(c, student_id, exam_id):
    rows = fetch_all(
        c,
        'SELECT * FROM answers WHERE student_id = ? AND exam_id = ?',
        (student_id, exam_id),
    )
    return [_answer_from_row(row) for row in rows]


def _load_student(c, student_id):
    student = fetch_one(c, 'SELECT * FROM students WHERE id = ?', (student_id,))
    if not student:
        raise NotFoundError('Student profile not found')
    return student


def _resource(exam):
    return {'school_id': exam['school_id'], 'teacher_id': exam['teacher_id']}


def _validate_questions(questions):
    if not isinstance(questions, list):
        raise ValidationError('questions must be a list.')
    valid_types = {qt.value for qt in QuestionType}
    cleaned = []
    for index, item in enumerate(questions):
        if not isinstance(item, dict):
            raise ValidationError(f'Question {index + 1} must be an object.')
        text = (item.get('text') or '').strip()
        qtype = (item.get('type') or '').strip().upper()
        if not text:
            raise ValidationError(f'Question {index + 1} needs text.')
        if qtype not in valid_types:
            raise ValidationError(f'Question {index + 1} has an invalid type: {qtype or "missing"}')
        points = safe_float(item.get('points', 1), default=-1.0)
        if points < 0:
            raise ValidationError(f'Question {index + 1} points must be zero or more.')
        options = item.get('options')
        if qtype == QuestionType.MCQ.value and (not isinstance(options, list) or len(options) < 2):
            raise ValidationError(f'Question {index + 1} needs at least two options.')
        cleaned.append({
            'text': text,
            'type': qtype,
            'options': options if isinstance(options, list) else None,
            'correct_answer': item.get('correct_answer'),
            'points': points,
            'explanation': item.get('explanation'),
        })
    return cleaned


def create_exam(actor, fields, questions=None):
    """Create a DRAFT exam and its questions for the calling teacher."""
    require(actor, 'exam.create')
    teacher_id = require_profile(actor, 'teacher_id', 'Teacher')
    start_time = _parse_input_time(fields.get('start_time'), 'start_time')
    end_time = _parse_input_time(fields.get('end_time'), 'end_time')
    if end_time <= start_time:
        raise ValidationError('End time must be after start time')
    cleaned = _validate_questions(questions or [])
    now = utcnow().isoformat()
    exam_id = new_id()

    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''INSERT INTO exams
               (id, school_id, teacher_id, subject_id, class_id, title, description, start_time, end_time,
                duration, max_attempts, passing_marks, status, show_results_immediately, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
            (
                exam_id,
                actor['school_id'],
                teacher_id,
                fields.get('subject_id') or None,
                fields.get('class_id') or None,
                fields['title'].strip(),
                fields.get('description') or '',
                start_time.isoformat(),
                end_time.isoformat(),
                int(fields.get('duration') or 60),
                int(fields.get('max_attempts') or 1),
                fields.get('passing_marks'),
                ExamStatus.DRAFT.value,
                1 if fields.get('show_results_immediately') else 0,
                now,
                now,
            ),
        )
        for order, question in enumerate(cleaned):
            db_execute(
                c,
                '''INSERT INTO questions (id, exam_id, text, type, options, correct_answer, points, order_index, explanation)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (
                    new_id(),
                    exam_id,
                    question['text'],
                    question['type'],
                    json.dumps(question['options']) if question['options'] is not None else None,
                    json.dumps(question['correct_answer']),
                    question['points'],
                    order,
                    question['explanation'],
                ),
            )
        exam = _load_exam(c, exam_id)
    logging.info("Exam %s created by teacher %s with %d questions", exam_id, teacher_id, len(cleaned))
    return _exam_json(exam)


def _parse_input_time(value, name):
    try:
        parsed = parse_timestamp(value)
    except (TypeError, ValueError):
        parsed = None
    if parsed is None:
        raise ValidationError(f'{name} must be an ISO-8601 timestamp.')
    return parsed


def submit_exam_for_approval(actor, exam_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        exam = _load_exam(c, exam_id)
        if not exam:
            raise NotFoundError('Exam not found')
        require(actor, 'exam.submit_for_approval', _resource(exam))
        target = EXAM_WORKFLOW.next_state(exam['status'], 'submit')
        if not _load_questions(c, exam_id):
            raise ValidationError('Exam must have at least one question')
        if exam['end_time'] <= exam['start_time']:
            raise ValidationError('End time must be after start time')
        db_execute(
            c,
            'UPDATE exams SET status = ?, updated_at = ? WHERE id = ? AND status = ?',
            (target.value, utcnow().isoformat(), exam_id, exam['status']),
        )
        exam = _load_exam(c, exam_id)
    logging.info("Exam %s submitted for approval", exam_id)
    return _exam_json(exam)


def review_exam(actor, exam_id, action, rejection_reason='', publish_now=False):
    """School admin approves (optionally publishing at once) or rejects a pending exam."""
    if action not in ('approve', 'reject'):
        raise ValidationError('Action must be either "approve" or "reject"')
    if action == 'reject' and not (rejection_reason or '').strip():
        raise ValidationError('Rejection reason is required when rejecting an exam')

    with db_connection(commit=True) as conn:
        c = conn.cursor()
        exam = _load_exam(c, exam_id)
        if not exam:
            raise NotFoundError('Exam not found')
        require(actor, 'exam.review', _resource(exam))
        target = EXAM_WORKFLOW.next_state(exam['status'], action)
        if action == 'approve' and publish_now:
            target = EXAM_WORKFLOW.next_state(target, 'publish')
        now = utcnow().isoformat()
        if action == 'approve':
            db_execute(
                c,
                '''UPDATE exams SET status = ?, approved_by = ?, approved_at = ?, rejection_reason = NULL, updated_at = ?
                   WHERE id = ? AND status = ?''',
                (target.value, actor['user_id'], now, now, exam_id, exam['status']),
            )
        else:
            db_execute(
                c,
                'UPDATE exams SET status = ?, rejection_reason = ?, updated_at = ? WHERE id = ? AND status = ?',
                (target.value, rejection_reason.strip(), now, exam_id, exam['status']),
            )
        exam = _load_exam(c, exam_id)
    logging.info("Exam %s reviewed (%s) by %s -> %s", exam_id, action, actor['user_id'], target.value)
    return _exam_json(exam)


def list_exams(actor, status=None, school_id=None):
    """
    Exams visible to staff: a teacher sees their own, a school admin their
    school's, a super admin every school's (or one, with `school_id`).
    Each exam carries its question, points and result totals.
    """
    require(actor, 'exam.list')
    sql = '''SELECT e.*,
                    (SELECT COUNT(*) FROM questions q WHERE q.exam_id = e.id) AS question_count,
                    (SELECT COALESCE(SUM(q.points), 0) FROM questions q WHERE q.exam_id = e.id) AS total_points,
                    (SELECT COUNT(*) FROM results r WHERE r.exam_id = e.id) AS result_count
             FROM exams e WHERE 1 = 1'''
    params = ()
    if actor['role'] == TEACHER:
        sql += ' AND e.teacher_id = ?'
        params += (require_profile(actor, 'teacher_id', 'Teacher'),)
    elif actor['role'] == SCHOOL_ADMIN:
        sql += ' AND e.school_id = ?'
        params += (actor.get('school_id'),)
    elif school_id:
        sql += ' AND e.school_id = ?'
        params += (school_id,)
    if status:
        sql += ' AND e.status = ?'
        params += (status,)
    sql += ' ORDER BY e.created_at DESC, e.start_time DESC'
    with db_connection() as conn:
        rows = fetch_all(conn.cursor(), sql, params)
    return [_exam_json(_exam_from_row(row)) for row in rows]


def list_student_exams(actor, now=None):
    """Exams the calling student can see, with availability and own progress."""
    require(actor, 'exam.take')
    student_id = require_profile(actor, 'student_id', 'Student')
    now = now or utcnow()
    with db_connection() as conn:
        c = conn.cursor()
        student = _load_student(c, student_id)
        rows = fetch_all(
            c,
            '''SELECT * FROM exams
               WHERE school_id = ? AND status IN (?, ?) AND (class_id IS NULL OR class_id = ?)
               ORDER BY start_time''',
            (student['school_id'], TAKEABLE_STATUSES[0], TAKEABLE_STATUSES[1], student['class_id']),
        )
        submitted = {
            row['exam_id'] for row in fetch_all(
                c, 'SELECT exam_id FROM results WHERE student_id = ?', (student_id,)
            )
        }
        in_progress = {
            row['exam_id'] for row in fetch_all(
                c,
                'SELECT exam_id FROM exam_attempts WHERE student_id = ? AND status = ?',
                (student_id, AttemptStatus.IN_PROGRESS.value),
            )
        }
    exams = []
    for row in rows:
        exam = _exam_from_row(row)
        if exam['id'] in submitted:
            student_status = 'completed'
        elif exam['id'] in in_progress:
            student_status = 'in_progress'
        else:
            student_status = 'not_started'
        item = _exam_json(exam)
        item['exam_status'] = exam_status(exam, now)
        item['student_status'] = student_status
        exams.append(item)
    return exams


def _takeable_exam(c, student, exam_id):
    exam = _load_exam(c, exam_id)
    if (
        not exam
        or exam['school_id'] != student['school_id']
        or exam['status'] not in TAKEABLE_STATUSES
        or (exam['class_id'] and exam['class_id'] != student['class_id'])
    ):
        raise NotFoundError('Exam not found or not accessible')
    return exam


def _check_available(exam, now):
    status = exam_status(exam, now)
    if status == 'active':
        return
    if exam['manual_control']:
        if status == 'completed':
            raise ConflictError('Exam has been completed')
        raise ConflictError('Exam is not currently live')
    if status == 'upcoming':
        raise ConflictError('Exam has not started yet')
    raise ConflictError('Exam has ended')


def start_exam(actor, exam_id, now=None):
    """Start a new attempt or resume the student's in-progress one."""
    require(actor, 'exam.take')
    student_id = require_profile(actor, 'student_id', 'Student')
    now = now or utcnow()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        student = _load_student(c, student_id)
        exam = _takeable_exam(c, student, exam_id)
        _check_available(exam, now)
        if fetch_one(c, 'SELECT id FROM results WHERE student_id = ? AND exam_id = ?', (student_id, exam_id)):
            raise ConflictError('Exam already submitted')

        attempts = fetch_all(
            c,
            'SELECT * FROM exam_attempts WHERE exam_id = ? AND student_id = ? ORDER BY attempt_number DESC',
            (exam_id, student_id),
        )
        active = next((a for a in attempts if a['status'] == AttemptStatus.IN_PROGRESS.value), None)
        if active:
            message = 'Resuming existing attempt'
            attempt = active
        else:
            if len(attempts) >= exam['max_attempts']:
                raise ConflictError(f"Maximum attempts ({exam['max_attempts']}) reached for this exam")
            attempt = {
                'id': new_id(),
                'exam_id': exam_id,
                'student_id': student_id,
                'attempt_number': len(attempts) + 1,
                'status': AttemptStatus.IN_PROGRESS.value,
                'started_at': now.isoformat(),
                'submitted_at': None,
                'time_spent': None,
            }
            try:
                db_execute(
                    c,
                    '''INSERT INTO exam_attempts (id, exam_id, student_id, attempt_number, status, started_at)
                       VALUES (?, ?, ?, ?, ?, ?)''',
                    (attempt['id'], exam_id, student_id, attempt['attempt_number'], attempt['status'], attempt['started_at']),
                )
            except INTEGRITY_ERRORS:
                raise ConflictError('Exam attempt already started')
            message = 'Exam started successfully'
            logging.info("Student %s started exam %s (attempt %d)", student_id, exam_id, attempt['attempt_number'])
        questions = _load_questions(c, exam_id)

    return {
        'message': message,
        'attempt': {k: format_timestamp(v) if k in ('started_at', 'submitted_at') else v for k, v in attempt.items()},
        'exam': {
            'id': exam['id'],
            'title': exam['title'],
            'description': exam['description'],
            'duration': exam['duration'],
            'total_marks': sum(q['points'] for q in questions),
            'show_results_immediately': exam['show_results_immediately'],
            'end_time': format_timestamp(exam['end_time']),
        },
        'questions': [_public_question(q) for q in questions],
        'time_remaining': max(0, int((exam['end_time'] - now).total_seconds())),
    }


def _upsert_answer(c, student_id, exam_id, question_id, attempt_id, response, now):
    db_execute(
        c,
        '''INSERT INTO answers (id, student_id, exam_id, question_id, attempt_id, response, points_awarded, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
           ON CONFLICT(student_id, exam_id, question_id) DO UPDATE SET
             response = excluded.response,
             attempt_id = COALESCE(excluded.attempt_id, answers.attempt_id),
             points_awarded = NULL,
             updated_at = excluded.updated_at''',
        (new_id(), student_id, exam_id, question_id, attempt_id, json.dumps(response), now, now),
    )


def save_answer(actor, exam_id, attempt_id, question_id, response, now=None):
    """Save (or overwrite) one answer during an in-progress attempt."""
    require(actor, 'exam.take')
    student_id = require_profile(actor, 'student_id', 'Student')
    now = now or utcnow()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        attempt = fetch_one(
            c,
            'SELECT * FROM exam_attempts WHERE id = ? AND exam_id = ? AND student_id = ? AND status = ?',
            (attempt_id, exam_id, student_id, AttemptStatus.IN_PROGRESS.value),
        )
        if not attempt:
            raise ConflictError('Invalid or inactive exam attempt')
        if not fetch_one(c, 'SELECT id FROM questions WHERE id = ? AND exam_id = ?', (question_id, exam_id)):
            raise ValidationError('Question not found in this exam')
        exam = _load_exam(c, exam_id)
        if not exam:
            raise NotFoundError('Exam not found')
        if now > exam['end_time']:
            raise ConflictError('Exam time has expired')
        _upsert_answer(c, student_id, exam_id, question_id, attempt_id, response, now.isoformat())
        answer = _answer_from_row(fetch_one(
            c,
            'SELECT * FROM answers WHERE student_id = ? AND exam_id = ? AND question_id = ?',
            (student_id, exam_id, question_id),
        ))
    return {'id': answer['id'], 'question_id': question_id, 'response': answer['response']}


def submit_exam(actor, exam_id, answers, now=None):
    """
    Submit a student's answers and score them.

    Checks, in order: the caller is a student with a profile, the exam is in
    the caller's school, the exam has not ended, and no result exists yet.
    Then, atomically: upsert one answer per question, reload every answer the
    student has for the exam, score them, close the attempt and write the
    single result row.
    """
    require(actor, 'exam.take')
    student_id = require_profile(actor, 'student_id', 'Student')
    if not isinstance(answers, dict):
        raise ValidationError('answers must be an object mapping question ids to responses.')
    now = now or utcnow()
    stamp = now.isoformat()

    with db_connection(commit=True) as conn:
        c = conn.cursor()
        exam = _load_exam(c, exam_id)
        if not exam or exam['school_id'] != actor.get('school_id'):
            raise NotFoundError('Exam not found')
        if now > exam['end_time']:
            raise ConflictError('Exam has ended')
        if fetch_one(c, 'SELECT id FROM results WHERE student_id = ? AND exam_id = ?', (student_id, exam_id)):
            raise ConflictError('Exam already submitted')

        questions = _load_questions(c, exam_id)
        known = {q['id'] for q in questions}
        unknown = sorted(str(qid) for qid in answers if qid not in known)
        if unknown:
            raise ValidationError(f"Question not found in this exam: {', '.join(unknown)}")

        attempt = fetch_one(
            c,
            '''SELECT * FROM exam_attempts WHERE exam_id = ? AND student_id = ? AND status = ?
               ORDER BY attempt_number DESC LIMIT 1''',
            (exam_id, student_id, AttemptStatus.IN_PROGRESS.value),
        )
        attempt_id = attempt['id'] if attempt else None
        for question_id, response in answers.items():
            _upsert_answer(c, student_id, exam_id, question_id, attempt_id, response, stamp)

        saved = _load_answers(c, student_id, exam_id)
        scored = calculate_score(saved, questions)

        if attempt:
            started = parse_timestamp(attempt['started_at'])
            db_execute(
                c,
                'UPDATE exam_attempts SET status = ?, submitted_at = ?, time_spent = ? WHERE id = ?',
                (
                    ATTEMPT_WORKFLOW.next_state(attempt['status'], 'submit').value,
                    stamp,
                    max(0, int((now - started).total_seconds())),
                    attempt['id'],
                ),
            )
        else:
            count = fetch_one(
                c,
                'SELECT COUNT(*) AS n FROM exam_attempts WHERE exam_id = ? AND student_id = ?',
                (exam_id, student_id),
            )['n']
            db_execute(
                c,
                '''INSERT INTO exam_attempts (id, exam_id, student_id, attempt_number, status, started_at, submitted_at, time_spent)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 0)''',
                (new_id(), exam_id, student_id, int(count) + 1, AttemptStatus.SUBMITTED.value, stamp, stamp),
            )

        result_id = new_id()
        try:
            db_execute(
                c,
                'INSERT INTO results (id, student_id, exam_id, score, graded_at) VALUES (?, ?, ?, ?, ?)',
                (result_id, student_id, exam_id, scored['score'], stamp),
            )
        except INTEGRITY_ERRORS:
            raise ConflictError('Exam already submitted')
        db_execute(c, 'UPDATE students SET last_exam_taken = ? WHERE id = ?', (stamp, student_id))

    logging.info(
        "Student %s submitted exam %s: %s/%s", student_id, exam_id, scored['score'], scored['total_points']
    )
    response = {
        'message': 'Exam submitted successfully',
        'result_id': result_id,
        'score': scored['score'],
        'total_points': scored['total_points'],
        'percentage': percentage(scored['score'], scored['total_points']),
        'answered_questions': len(saved),
        'total_questions': len(questions),
    }
    if exam.get('passing_marks') is not None:
        response['passed'] = scored['score'] >= safe_float(exam['passing_marks'])
    return response


def reset_attempts(actor, exam_id, student_id=None, reset_all=False):
    """Delete attempts, answers and results for one student or every student of an exam."""
    if not reset_all and not student_id:
        raise ValidationError('Either student_id or reset_all must be provided')

    with db_connection(commit=True) as conn:
        c = conn.cursor()
        exam = _load_exam(c, exam_id)
        if not exam:
            raise NotFoundError('Exam not found')
        require(actor, 'exam.reset_attempts', _resource(exam))
        if reset_all:
            scope_sql, params = 'exam_id = ?', (exam_id,)
        else:
            scope_sql, params = 'exam_id = ? AND student_id = ?', (exam_id, student_id)
        db_execute(c, f'DELETE FROM exam_attempts WHERE {scope_sql}', params)
        attempts_deleted = max(int(c.rowcount or 0), 0)
        db_execute(c, f'DELETE FROM answers WHERE {scope_sql}', params)
        db_execute(c, f'DELETE FROM results WHERE {scope_sql}', params)
        results_deleted = max(int(c.rowcount or 0), 0)

    if reset_all:
        logging.info("All attempts reset for exam %s (%d attempts)", exam_id, attempts_deleted)
        message = 'All student attempts have been reset for this exam'
    else:
        logging.info("Attempts reset for student %s on exam %s (%d attempts)", student_id, exam_id, attempts_deleted)
        message = f'Student attempts have been reset ({attempts_deleted} attempts deleted)'
    return {
        'message': message,
        'reset_all': bool(reset_all),
        'attempts_deleted': attempts_deleted,
        'results_deleted': results_deleted,
    }


def manual_control(actor, exam_id, action, enable_manual_control=None):
    """make_live, make_completed or toggle_manual_control on an exam of the admin's school."""
    if action not in ('make_live', 'make_completed', 'toggle_manual_control'):
        raise ValidationError('Invalid action')
    if action == 'toggle_manual_control' and enable_manual_control is None:
        raise ValidationError('enable_manual_control is required for toggle_manual_control')

    with db_connection(commit=True) as conn:
        c = conn.cursor()
        exam = _load_exam(c, exam_id)
        if not exam:
            raise NotFoundError('Exam not found')
        require(actor, 'exam.manual_control', _resource(exam))

        if action == 'make_live':
            started = fetch_one(
                c,
                'SELECT COUNT(*) AS n FROM exam_attempts WHERE exam_id = ? AND status IN (?, ?)',
                (exam_id,) + ACTIVE_ATTEMPT_STATUSES,
            )
            if int(started['n'] or 0):
                raise ConflictError('Cannot make exam live - students have already started taking this exam')
            updates = {'is_live': 1, 'is_completed': 0, 'manual_control': 1}
        elif action == 'make_completed':
            updates = {'is_live': 0, 'is_completed': 1, 'manual_control': 1}
        elif enable_manual_control:
            updates = {'manual_control': 1}
        else:
            updates = {'manual_control': 0, 'is_live': 0, 'is_completed': 0}

        assignments = ', '.join(f'{column} = ?' for column in updates)
        db_execute(
            c,
            f'UPDATE exams SET {assignments}, updated_at = ? WHERE id = ?',
            tuple(updates.values()) + (utcnow().isoformat(), exam_id),
        )
        exam = _load_exam(c, exam_id)

    logging.info("Exam %s manual control: %s by %s", exam_id, action, actor['user_id'])
    return _exam_json(exam)


def grade_answer(actor, exam_id, student_id, question_id, points_awarded, now=None):
    """Award points to a free-text answer and rescore the student's result."""
    now = now or utcnow()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        exam = _load_exam(c, exam_id)
        if not exam:
            raise NotFoundError('Exam not found')
        require(actor, 'exam.grade', _resource(exam))
        questions = _load_questions(c, exam_id)
        question = next((q for q in questions if q['id'] == question_id), None)
        if not question:
            raise ValidationError('Question not found in this exam')
        if question['type'] not in FREE_TEXT_TYPES:
            raise ValidationError('Only short-answer and essay questions are graded by hand')
        points = safe_float(points_awarded, default=-1.0)
        if points < 0 or points > question['points']:
            raise ValidationError(f"points_awarded must be between 0 and {question['points']:g}")
        result = fetch_one(
            c, 'SELECT * FROM results WHERE student_id = ? AND exam_id = ?', (student_id, exam_id)
        )
        if not result:
            raise ConflictError('Exam has not been submitted by this student')
        db_execute(
            c,
            '''UPDATE answers SET points_awarded = ?, updated_at = ?
               WHERE student_id = ? AND exam_id = ? AND question_id = ?''',
            (points, now.isoformat(), student_id, exam_id, question_id),
        )
        if not c.rowcount:
            raise NotFoundError('Answer not found')
        scored = calculate_score(_load_answers(c, student_id, exam_id), questions)
        db_execute(
            c,
            'UPDATE results SET score = ?, graded_at = ? WHERE id = ?',
            (scored['score'], now.isoformat(), result['id']),
        )
    logging.info("Answer graded on exam %s for student %s: %s points", exam_id, student_id, points)
    return {
        'student_id': student_id,
        'score': scored['score'],
        'total_points': scored['total_points'],
        'percentage': percentage(scored['score'], scored['total_points']),
    }


def get_exam_results(actor, exam_id):
    """Results of every student for an exam owned by the calling teacher."""
    with db_connection() as conn:
        c = conn.cursor()
        exam = _load_exam(c, exam_id)
        if not exam:
            raise NotFoundError('Exam not found')
        require(actor, 'exam.view_results', _resource(exam))
        total = sum(q['points'] for q in _load_questions(c, exam_id))
        rows = fetch_all(
            c,
            '''SELECT r.id, r.student_id, r.score, r.graded_at, u.name AS student_name, s.reg_number
               FROM results r
               JOIN students s ON s.id = r.student_id
               JOIN users u ON u.id = s.user_id
               WHERE r.exam_id = ?
               ORDER BY r.score DESC, u.name''',
            (exam_id,),
        )
    return {
        'exam': _exam_json(exam),
        'total_points': total,
        'results': [
            dict(row, graded_at=format_timestamp(row['graded_at']), percentage=percentage(row['score'], total))
            for row in rows
        ],
    }


def get_student_result(actor, exam_id):
    """The calling student's own result for one exam."""
    require(actor, 'exam.take')
    student_id = require_profile(actor, 'student_id', 'Student')
    with db_connection() as conn:
        c = conn.cursor()
        exam = _load_exam(c, exam_id)
        if not exam or exam['school_id'] != actor.get('school_id'):
            raise NotFoundError('Exam not found')
        result = fetch_one(
            c, 'SELECT * FROM results WHERE student_id = ? AND exam_id = ?', (student_id, exam_id)
        )
        if not result:
            raise NotFoundError('Result not found')
        questions = _load_questions(c, exam_id)
        answers = _load_answers(c, student_id, exam_id) if exam['show_results_immediately'] else []
    total = sum(q['points'] for q in questions)
    payload = {
        'id': result['id'],
        'exam_id': exam_id,
        'title': exam['title'],
        'score': result['score'],
        'total_points': total,
        'percentage': percentage(result['score'], total),
        'graded_at': format_timestamp(result['graded_at']),
    }
    if exam['show_results_immediately']:
        by_question = {a['question_id']: a for a in answers}
        payload['breakdown'] = [
            {
                'question_id': q['id'],
                'text': q['text'],
                'type': q['type'],
                'response': by_question.get(q['id'], {}).get('response'),
                'max_points': q['points'],
                'explanation': q.get('explanation'),
            }
            for q in questions
        ]
    return payload
