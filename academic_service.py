"""
Term report cards (academic results) and lesson plans, both driven through
the transition tables in workflows.py.
"""

import logging

from access_policy import SUPER_ADMIN, require, require_profile
from db import db_connection, db_execute, fetch_all, fetch_one, format_timestamp, new_id, utcnow
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from scoring import DEFAULT_GRADING_SCALE, calculate_gpa, calculate_grade
from workflows import (
    ACADEMIC_RESULT_WORKFLOW, LESSON_PLAN_REVIEW_WORKFLOW, LESSON_PLAN_WORKFLOW,
    LessonPlanStatus, ResultStatus, ReviewStatus,
)

TIMESTAMP_FIELDS = ('submitted_at', 'approved_at', 'published_at', 'reviewed_at', 'created_at', 'updated_at')

REVIEW_ACTIONS = {
    ReviewStatus.APPROVED.value: 'approve',
    ReviewStatus.REJECTED.value: 'reject',
    ReviewStatus.NEEDS_REVISION.value: 'request_revision',
}

REVIEW_MESSAGES = {
    ReviewStatus.APPROVED.value: 'Your lesson plan has been approved!',
    ReviewStatus.REJECTED.value: 'Your lesson plan has been rejected. Please review the feedback and create a new version.',
    ReviewStatus.NEEDS_REVISION.value: 'Your lesson plan needs revision. Please review the feedback and resubmit.',
}


def _to_json(row):
    data = dict(row)
    for key in TIMESTAMP_FIELDS:
        if key in data:
            data[key] = format_timestamp(data[key])
    return data


def _placeholders(values):
    return ', '.join('?' for _ in values)


# Grading scale

def load_grading_scale(c, school_id):
    rows = fetch_all(
        c,
        '''SELECT min_score, max_score, grade, grade_point, remark FROM grading_scales
           WHERE school_id = ? AND is_active = 1
           ORDER BY min_score DESC''',
        (school_id,),
    )
    return rows or DEFAULT_GRADING_SCALE


def get_grading_scale(school_id):
    with db_connection() as conn:
        return load_grading_scale(conn.cursor(), school_id)


def replace_grading_scale(actor, bands):
    """Replace the school's active grading scale with non-overlapping bands."""
    require(actor, 'grading_scale.manage', {'school_id': actor.get('school_id')})
    if not bands:
        raise ValidationError('At least one grading band is required')
    ordered = sorted(bands, key=lambda b: b['min_score'])
    for band in ordered:
        if band['min_score'] > band['max_score']:
            raise ValidationError(f"Band {band['grade']}: min_score is above max_score")
    for lower, upper in zip(ordered, ordered[1:]):
        if upper['min_score'] <= lower['max_score']:
            raise ValidationError(f"Bands {lower['grade']} and {upper['grade']} overlap")

    school_id = actor['school_id']
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM grading_scales WHERE school_id = ?', (school_id,))
        for band in ordered:
            db_execute(
                c,
                '''INSERT INTO grading_scales (id, school_id, min_score, max_score, grade, grade_point, remark, is_active)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 1)''',
                (new_id(), school_id, band['min_score'], band['max_score'], band['grade'],
                 band['grade_point'], band.get('remark') or ''),
            )
        scale = load_grading_scale(c, school_id)
    logging.info("Grading scale replaced for school %s (%d bands)", school_id, len(ordered))
    return scale


# Academic results

def upsert_academic_result(actor, fields):
    """Create or update a teacher's DRAFT result for one student, subject, term and session."""
    require(actor, 'academic_result.create')
    teacher_id = require_profile(actor, 'teacher_id', 'Teacher')
    school_id = actor['school_id']
    ca_score = float(fields['ca_score'])
    exam_score = float(fields['exam_score'])
    total = ca_score + exam_score
    now = utcnow().isoformat()

    with db_connection(commit=True) as conn:
        c = conn.cursor()
        student = fetch_one(c, 'SELECT * FROM students WHERE id = ?', (fields['student_id'],))
        if not student:
            raise NotFoundError('Student not found')
        if student['school_id'] != school_id:
            raise ForbiddenError('Student does not belong to your school')
        if student['class_id'] != fields['class_id']:
            raise ValidationError('Student does not belong to the specified class')
        teaches = fetch_one(
            c,
            'SELECT id FROM class_subjects WHERE teacher_id = ? AND class_id = ? AND subject_id = ?',
            (teacher_id, fields['class_id'], fields['subject_id']),
        )
        if not teaches:
            raise ForbiddenError('You are not authorized to add results for this subject in this class')

        grade = calculate_grade(total, 100, load_grading_scale(c, school_id))
        existing = fetch_one(
            c,
            '''SELECT * FROM academic_results
               WHERE student_id = ? AND subject_id = ? AND term = ? AND session = ?''',
            (fields['student_id'], fields['subject_id'], fields['term'], fields['session']),
        )
        if existing:
            status = ResultStatus(existing['status'])
            if status == ResultStatus.REJECTED:
                status = ACADEMIC_RESULT_WORKFLOW.next_state(status, 'revise')
            elif status != ResultStatus.DRAFT:
                raise ConflictError(f"Cannot edit result with status: {status.value}")
            result_id = existing['id']
            db_execute(
                c,
                '''UPDATE academic_results SET
                     teacher_id = ?, class_id = ?, ca_score = ?, exam_score = ?, total_score = ?,
                     grade = ?, grade_point = ?, remark = ?, teacher_comment = ?, status = ?, updated_at = ?
                   WHERE id = ? AND status = ?''',
                (teacher_id, fields['class_id'], ca_score, exam_score, total, grade['grade'],
                 grade['grade_point'], grade['remark'], fields.get('teacher_comment') or None,
                 status.value, now, result_id, existing['status']),
            )
        else:
            result_id = new_id()
            db_execute(
                c,
                '''INSERT INTO academic_results
                   (id, school_id, teacher_id, student_id, subject_id, class_id, term, session, ca_score,
                    exam_score, total_score, grade, grade_point, remark, teacher_comment, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (result_id, school_id, teacher_id, fields['student_id'], fields['subject_id'],
                 fields['class_id'], fields['term'], fields['session'], ca_score, exam_score, total,
                 grade['grade'], grade['grade_point'], grade['remark'],
                 fields.get('teacher_comment') or None, ResultStatus.DRAFT.value, now, now),
            )
        row = fetch_one(c, 'SELECT * FROM academic_results WHERE id = ?', (result_id,))
    return _to_json(row)


def _select_by_ids(c, result_ids):
    ids = list(dict.fromkeys(result_ids))
    rows = fetch_all(
        c, f'SELECT * FROM academic_results WHERE id IN ({_placeholders(ids)})', tuple(ids)
    )
    found = {row['id'] for row in rows}
    missing = [rid for rid in ids if rid not in found]
    return rows, missing


def _source_statuses(action):
    return tuple(status.value for status in ACADEMIC_RESULT_WORKFLOW.sources(action))


def _transition_rows(c, rows, action, extra_sql='', extra_params=()):
    """Move every row one step along `action`; all rows or none."""
    if not rows:
        return 0
    target = ACADEMIC_RESULT_WORKFLOW.next_state(rows[0]['status'], action)
    for row in rows:
        ACADEMIC_RESULT_WORKFLOW.next_state(row['status'], action)
    ids = tuple(row['id'] for row in rows)
    sources = _source_statuses(action)
    db_execute(
        c,
        f'''UPDATE academic_results SET status = ?{extra_sql}, updated_at = ?
            WHERE id IN ({_placeholders(ids)}) AND status IN ({_placeholders(sources)})''',
        (target.value,) + tuple(extra_params) + (utcnow().isoformat(),) + ids + sources,
    )
    if c.rowcount != len(ids):
        raise ConflictError('Results changed while being updated; nothing was changed')
    return len(ids)


def submit_academic_results(actor, result_ids=None, class_id=None, subject_id=None, term=None, session=None):
    """DRAFT -> SUBMITTED for the calling teacher's own results."""
    require(actor, 'academic_result.submit')
    teacher_id = require_profile(actor, 'teacher_id', 'Teacher')
    if not result_ids and not (class_id and subject_id and term and session):
        raise ValidationError('Either result_ids or (class_id, subject_id, term, session) required')

    now = utcnow().isoformat()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if result_ids:
            rows, missing = _select_by_ids(c, result_ids)
            if missing and not rows:
                raise NotFoundError('No draft results found to submit')
            if missing:
                raise NotFoundError(f"Results not found: {', '.join(missing)}")
            for row in rows:
                require(actor, 'academic_result.submit', row)
        else:
            sources = _source_statuses('submit')
            rows = fetch_all(
                c,
                f'''SELECT * FROM academic_results
                   WHERE teacher_id = ? AND class_id = ? AND subject_id = ? AND term = ? AND session = ?
                     AND status IN ({_placeholders(sources)})''',
                (teacher_id, class_id, subject_id, term, session) + sources,
            )
            if not rows:
                raise NotFoundError('No draft results found to submit')
        count = _transition_rows(c, rows, 'submit', ', submitted_at = ?', (now,))

    logging.info("Teacher %s submitted %d academic results", teacher_id, count)
    return {'message': f'Successfully submitted {count} results for approval', 'count': count}


def _load_for_review(c, actor, result_id):
    row = fetch_one(c, 'SELECT * FROM academic_results WHERE id = ?', (result_id,))
    if not row:
        raise NotFoundError('Result not found')
    require(actor, 'academic_result.review', row)
    return row


def approve_academic_result(actor, result_id, hod_comment=None, principal_comment=None):
    """SUBMITTED -> APPROVED, stamping the approver."""
    now = utcnow().isoformat()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        row = _load_for_review(c, actor, result_id)
        target = ACADEMIC_RESULT_WORKFLOW.next_state(row['status'], 'approve')
        db_execute(
            c,
            '''UPDATE academic_results SET status = ?, approved_by = ?, approved_at = ?,
                 hod_comment = ?, principal_comment = ?, updated_at = ?
               WHERE id = ? AND status = ?''',
            (target.value, actor['user_id'], now, hod_comment or row['hod_comment'],
             principal_comment or row['principal_comment'], now, result_id, row['status']),
        )
        if c.rowcount != 1:
            raise ConflictError('Result changed while being approved')
        row = fetch_one(c, 'SELECT * FROM academic_results WHERE id = ?', (result_id,))
    logging.info("Academic result %s approved by %s", result_id, actor['user_id'])
    return _to_json(row)


def reject_academic_result(actor, result_id, reason):
    """SUBMITTED -> REJECTED; the teacher may then edit it back to DRAFT."""
    if not (reason or '').strip():
        raise ValidationError('Rejection reason is required')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        row = _load_for_review(c, actor, result_id)
        target = ACADEMIC_RESULT_WORKFLOW.next_state(row['status'], 'reject')
        db_execute(
            c,
            '''UPDATE academic_results SET status = ?, hod_comment = ?, updated_at = ?
               WHERE id = ? AND status = ?''',
            (target.value, f'Rejected: {reason.strip()}', utcnow().isoformat(), result_id, row['status']),
        )
        if c.rowcount != 1:
            raise ConflictError('Result changed while being rejected')
        row = fetch_one(c, 'SELECT * FROM academic_results WHERE id = ?', (result_id,))
    logging.info("Academic result %s rejected by %s", result_id, actor['user_id'])
    return _to_json(row)


def publish_academic_results(actor, result_ids=None, class_id=None, term=None, session=None, school_id=None):
    """APPROVED -> PUBLISHED in bulk, by id list or by class/term/session."""
    require(actor, 'academic_result.publish')
    if not result_ids and not (class_id and term and session):
        raise ValidationError('Either result_ids or (class_id, term, session) required')
    scope_school = school_id if actor['role'] == SUPER_ADMIN else actor.get('school_id')

    now = utcnow().isoformat()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if result_ids:
            rows, missing = _select_by_ids(c, result_ids)
            if scope_school:
                rows_in_scope = [row for row in rows if row['school_id'] == scope_school]
                missing += [row['id'] for row in rows if row['school_id'] != scope_school]
                rows = rows_in_scope
            if not rows:
                raise NotFoundError('No approved results found to publish')
            if missing:
                raise NotFoundError(f"Results not found: {', '.join(missing)}")
            for row in rows:
                require(actor, 'academic_result.publish', row)
        else:
            sources = _source_statuses('publish')
            sql = f'''SELECT * FROM academic_results
                      WHERE class_id = ? AND term = ? AND session = ?
                      AND status IN ({_placeholders(sources)})'''
            params = (class_id, term, session) + sources
            if scope_school:
                sql += ' AND school_id = ?'
                params += (scope_school,)
            rows = fetch_all(c, sql, params)
            if not rows:
                raise NotFoundError('No approved results found to publish')
        count = _transition_rows(c, rows, 'publish', ', published_at = ?', (now,))

    logging.info("%d academic results published by %s", count, actor['user_id'])
    return {'message': f'Successfully published {count} results', 'count': count}


def get_student_academic_results(actor, term=None, session=None):
    """The calling student's PUBLISHED results with a GPA summary."""
    require(actor, 'academic_result.view_own')
    student_id = require_profile(actor, 'student_id', 'Student')
    sql = '''SELECT ar.*, sub.name AS subject_name FROM academic_results ar
             LEFT JOIN subjects sub ON sub.id = ar.subject_id
             WHERE ar.student_id = ? AND ar.status = ?'''
    params = (student_id, ResultStatus.PUBLISHED.value)
    if term:
        sql += ' AND ar.term = ?'
        params += (term,)
    if session:
        sql += ' AND ar.session = ?'
        params += (session,)
    sql += ' ORDER BY ar.session, ar.term, sub.name'
    with db_connection() as conn:
        rows = fetch_all(conn.cursor(), sql, params)
    return {'results': [_to_json(row) for row in rows], 'summary': calculate_gpa(rows)}


LISTING_SQL = '''SELECT ar.*, u.name AS student_name, st.reg_number, sub.name AS subject_name,
                        cl.name AS class_name, cl.section AS class_section
                 FROM academic_results ar
                 JOIN students st ON st.id = ar.student_id
                 JOIN users u ON u.id = st.user_id
                 LEFT JOIN subjects sub ON sub.id = ar.subject_id
                 LEFT JOIN classes cl ON cl.id = ar.class_id'''


def _filter_clause(filters):
    clauses, params = [], ()
    for column, value in filters:
        if value:
            clauses.append(f'ar.{column} = ?')
            params += (value,)
    return (' WHERE ' + ' AND '.join(clauses)) if clauses else '', params


def list_academic_results(actor, status=None, class_id=None, subject_id=None, teacher_id=None,
                          term=None, session=None, school_id=None):
    """
    Results for admin review. A school admin is held to their own school;
    a super admin may narrow to one with `school_id`.

    `statistics` counts every status under the same filters except `status`
    itself, so the approval queue stays visible while browsing one status.
    """
    require(actor, 'academic_result.list')
    scope_school = school_id if actor['role'] == SUPER_ADMIN else actor.get('school_id')
    if actor['role'] != SUPER_ADMIN and not scope_school:
        raise NotFoundError('School not found')
    filters = [('school_id', scope_school), ('class_id', class_id), ('subject_id', subject_id),
               ('teacher_id', teacher_id), ('term', term), ('session', session)]
    where, params = _filter_clause(filters)
    rows_where, rows_params = _filter_clause(filters + [('status', status)])

    with db_connection() as conn:
        c = conn.cursor()
        rows = fetch_all(
            c,
            LISTING_SQL + rows_where + ' ORDER BY ar.status, ar.submitted_at DESC, ar.created_at DESC',
            rows_params,
        )
        counts = fetch_all(
            c, f'SELECT ar.status, COUNT(*) AS n FROM academic_results ar{where} GROUP BY ar.status', params
        )
    statistics = {s.value.lower(): 0 for s in ResultStatus}
    for row in counts:
        statistics[row['status'].lower()] = row['n']
    statistics['total'] = sum(row['n'] for row in counts)
    return {'results': [_to_json(row) for row in rows], 'statistics': statistics}


def list_teacher_academic_results(actor, status=None, class_id=None, subject_id=None, term=None, session=None):
    require(actor, 'academic_result.list_own')
    teacher_id = require_profile(actor, 'teacher_id', 'Teacher')
    where, params = _filter_clause([('teacher_id', teacher_id), ('class_id', class_id),
                                    ('subject_id', subject_id), ('term', term), ('session', session),
                                    ('status', status)])
    with db_connection() as conn:
        rows = fetch_all(conn.cursor(), LISTING_SQL + where + ' ORDER BY ar.session DESC, ar.term, u.name', params)
    return [_to_json(row) for row in rows]


def delete_academic_result(actor, result_id):
    """Delete one of the caller's DRAFT results."""
    require(actor, 'academic_result.delete')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        row = fetch_one(c, 'SELECT * FROM academic_results WHERE id = ?', (result_id,))
        if not row:
            raise NotFoundError('Result not found')
        require(actor, 'academic_result.delete', row)
        if row['status'] != ResultStatus.DRAFT.value:
            raise ConflictError(f"Cannot delete result with status: {row['status']}")
        db_execute(c, 'DELETE FROM academic_results WHERE id = ? AND status = ?',
                   (result_id, ResultStatus.DRAFT.value))
        if c.rowcount != 1:
            raise ConflictError('Result changed while being deleted')
    logging.info("Academic result %s deleted by %s", result_id, actor['user_id'])
    return {'message': 'Result deleted successfully', 'id': result_id}


# Lesson plans

def _load_lesson_plan(c, plan_id):
    plan = fetch_one(c, 'SELECT * FROM lesson_plans WHERE id = ?', (plan_id,))
    if not plan:
        raise NotFoundError('Lesson plan not found')
    return plan


def create_lesson_plan(actor, fields):
    require(actor, 'lesson_plan.create')
    teacher_id = require_profile(actor, 'teacher_id', 'Teacher')
    plan_id = new_id()
    now = utcnow().isoformat()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''INSERT INTO lesson_plans
               (id, school_id, teacher_id, subject_id, class_id, title, content, status, review_status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
            (plan_id, actor['school_id'], teacher_id, fields.get('subject_id') or None,
             fields.get('class_id') or None, fields['title'].strip(), fields.get('content') or '',
             LessonPlanStatus.DRAFT.value, ReviewStatus.PENDING.value, now, now),
        )
        plan = _load_lesson_plan(c, plan_id)
    return _to_json(plan)


def update_lesson_plan(actor, plan_id, fields):
    """Edit a lesson plan; edits to a rejected or sent-back plan put it back in review."""
    now = utcnow().isoformat()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        plan = _load_lesson_plan(c, plan_id)
        require(actor, 'lesson_plan.publish', plan)
        review_status = plan['review_status']
        if review_status == ReviewStatus.APPROVED.value:
            raise ConflictError('Cannot edit an approved lesson plan')
        if LESSON_PLAN_REVIEW_WORKFLOW.can(review_status, 'resubmit'):
            review_status = LESSON_PLAN_REVIEW_WORKFLOW.next_state(review_status, 'resubmit').value
        db_execute(
            c,
            '''UPDATE lesson_plans SET title = ?, content = ?, subject_id = ?, class_id = ?,
                 review_status = ?, updated_at = ?
               WHERE id = ?''',
            ((fields.get('title') or plan['title']).strip(),
             fields['content'] if fields.get('content') is not None else plan['content'],
             fields.get('subject_id') or plan['subject_id'],
             fields.get('class_id') or plan['class_id'],
             review_status, now, plan_id),
        )
        plan = _load_lesson_plan(c, plan_id)
    return _to_json(plan)


def publish_lesson_plan(actor, plan_id):
    """DRAFT -> PUBLISHED, which queues the plan for review."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        plan = _load_lesson_plan(c, plan_id)
        require(actor, 'lesson_plan.publish', plan)
        target = LESSON_PLAN_WORKFLOW.next_state(plan['status'], 'publish')
        db_execute(
            c,
            'UPDATE lesson_plans SET status = ?, review_status = ?, updated_at = ? WHERE id = ? AND status = ?',
            (target.value, ReviewStatus.PENDING.value, utcnow().isoformat(), plan_id, plan['status']),
        )
        plan = _load_lesson_plan(c, plan_id)
    logging.info("Lesson plan %s published for review", plan_id)
    return _to_json(plan)


def review_lesson_plan(actor, plan_id, review_status, review_notes=''):
    action = REVIEW_ACTIONS.get(review_status)
    if action is None:
        raise ValidationError('Invalid review status')
    notes = (review_notes or '').strip()
    if action in ('reject', 'request_revision') and not notes:
        raise ValidationError('Review notes are required for rejection or revision requests')

    now = utcnow().isoformat()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        plan = _load_lesson_plan(c, plan_id)
        require(actor, 'lesson_plan.review', plan)
        if plan['status'] != LessonPlanStatus.PUBLISHED.value:
            raise ConflictError('Only published lesson plans can be reviewed')
        target = LESSON_PLAN_REVIEW_WORKFLOW.next_state(plan['review_status'], action)
        db_execute(
            c,
            '''UPDATE lesson_plans SET review_status = ?, review_notes = ?, reviewed_at = ?, reviewed_by = ?, updated_at = ?
               WHERE id = ? AND review_status = ?''',
            (target.value, notes or None, now, actor['user_id'], now, plan_id, plan['review_status']),
        )
        plan = _load_lesson_plan(c, plan_id)
    logging.info("Lesson plan %s reviewed: %s", plan_id, target.value)
    return {
        'lesson_plan': _to_json(plan),
        'message': f'Lesson plan reviewed successfully. {REVIEW_MESSAGES[target.value]}',
    }
