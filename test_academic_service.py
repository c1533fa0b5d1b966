import pytest

import academic_service
from db import db_connection, fetch_one
from errors import ConflictError, ForbiddenError, NotFoundError, UnauthorizedError, ValidationError


def result_fields(world, student_id=None, **overrides):
    fields = {
        'student_id': student_id or world.student_id,
        'subject_id': world.subject_id,
        'class_id': world.class_id,
        'term': 'First Term',
        'session': '2025/2026',
        'ca_score': 30,
        'exam_score': 45,
        'teacher_comment': '',
    }
    fields.update(overrides)
    return fields


def status_of(result_id):
    with db_connection() as conn:
        return fetch_one(conn.cursor(), 'SELECT status FROM academic_results WHERE id = ?', (result_id,))['status']


def test_create_result_grades_with_default_scale(world):
    result = academic_service.upsert_academic_result(world.teacher, result_fields(world))
    assert result['status'] == 'DRAFT'
    assert result['total_score'] == 75
    assert result['grade'] == 'B+'
    assert result['grade_point'] == 4.0


def test_create_result_uses_school_grading_scale(world):
    academic_service.replace_grading_scale(world.admin, [
        {'min_score': 0, 'max_score': 49, 'grade': 'F', 'grade_point': 0, 'remark': 'Fail'},
        {'min_score': 50, 'max_score': 100, 'grade': 'P', 'grade_point': 1, 'remark': 'Pass'},
    ])
    result = academic_service.upsert_academic_result(world.teacher, result_fields(world))
    assert result['grade'] == 'P'


def test_grading_scale_rejects_overlapping_bands(world):
    with pytest.raises(ValidationError, match='overlap'):
        academic_service.replace_grading_scale(world.admin, [
            {'min_score': 0, 'max_score': 50, 'grade': 'F', 'grade_point': 0},
            {'min_score': 50, 'max_score': 100, 'grade': 'P', 'grade_point': 1},
        ])
    with pytest.raises(UnauthorizedError):
        academic_service.replace_grading_scale(world.teacher, [])


def test_teacher_must_teach_the_subject_in_that_class(world):
    with pytest.raises(ForbiddenError):
        academic_service.upsert_academic_result(world.other_teacher, result_fields(world))
    with pytest.raises(ValidationError, match='specified class'):
        academic_service.upsert_academic_result(world.teacher, result_fields(world, class_id=world.other_class_id))


def test_full_pipeline_to_student_view(world):
    r1 = academic_service.upsert_academic_result(world.teacher, result_fields(world))['id']
    r2 = academic_service.upsert_academic_result(
        world.teacher, result_fields(world, student_id=world.student2_id, ca_score=40, exam_score=55)
    )['id']

    submitted = academic_service.submit_academic_results(
        world.teacher, class_id=world.class_id, subject_id=world.subject_id,
        term='First Term', session='2025/2026',
    )
    assert submitted['count'] == 2

    approved = academic_service.approve_academic_result(world.admin, r1, hod_comment='Good work')
    assert approved['status'] == 'APPROVED'
    assert approved['approved_by'] == world.admin['user_id']
    academic_service.approve_academic_result(world.admin, r2)

    published = academic_service.publish_academic_results(world.admin, result_ids=[r1, r2])
    assert published['count'] == 2
    assert status_of(r1) == 'PUBLISHED'

    view = academic_service.get_student_academic_results(world.student)
    assert [r['id'] for r in view['results']] == [r1]
    assert view['results'][0]['subject_name'] == 'Mathematics'
    assert view['summary']['gpa'] == 4.0


def test_submit_by_ids_is_all_or_nothing(world):
    r1 = academic_service.upsert_academic_result(world.teacher, result_fields(world))['id']
    r2 = academic_service.upsert_academic_result(
        world.teacher, result_fields(world, student_id=world.student2_id)
    )['id']
    academic_service.submit_academic_results(world.teacher, result_ids=[r2])

    with pytest.raises(ConflictError, match='SUBMITTED'):
        academic_service.submit_academic_results(world.teacher, result_ids=[r1, r2])
    assert status_of(r1) == 'DRAFT'
    assert status_of(r2) == 'SUBMITTED'


def test_submit_needs_a_selection_and_drafts(world):
    with pytest.raises(ValidationError):
        academic_service.submit_academic_results(world.teacher)
    with pytest.raises(NotFoundError, match='No draft results found to submit'):
        academic_service.submit_academic_results(
            world.teacher, class_id=world.class_id, subject_id=world.subject_id,
            term='First Term', session='2025/2026',
        )
    r1 = academic_service.upsert_academic_result(world.teacher, result_fields(world))['id']
    with pytest.raises(ForbiddenError):
        academic_service.submit_academic_results(world.other_teacher, result_ids=[r1])


def test_cannot_approve_or_publish_out_of_order(world):
    r1 = academic_service.upsert_academic_result(world.teacher, result_fields(world))['id']
    with pytest.raises(ConflictError, match='DRAFT'):
        academic_service.approve_academic_result(world.admin, r1)
    with pytest.raises(ConflictError, match='DRAFT'):
        academic_service.publish_academic_results(world.admin, result_ids=[r1])
    assert status_of(r1) == 'DRAFT'

    academic_service.submit_academic_results(world.teacher, result_ids=[r1])
    with pytest.raises(ConflictError, match='SUBMITTED'):
        academic_service.publish_academic_results(world.admin, result_ids=[r1])
    assert status_of(r1) == 'SUBMITTED'


def test_publish_by_filter_only_touches_approved(world):
    r1 = academic_service.upsert_academic_result(world.teacher, result_fields(world))['id']
    r2 = academic_service.upsert_academic_result(
        world.teacher, result_fields(world, student_id=world.student2_id)
    )['id']
    academic_service.submit_academic_results(world.teacher, result_ids=[r1, r2])
    academic_service.approve_academic_result(world.admin, r1)

    published = academic_service.publish_academic_results(
        world.admin, class_id=world.class_id, term='First Term', session='2025/2026'
    )
    assert published['count'] == 1
    assert status_of(r1) == 'PUBLISHED'
    assert status_of(r2) == 'SUBMITTED'

    with pytest.raises(NotFoundError, match='No approved results found to publish'):
        academic_service.publish_academic_results(
            world.other_admin, class_id=world.class_id, term='First Term', session='2025/2026'
        )


def test_rejected_result_can_be_edited_back_to_draft(world):
    r1 = academic_service.upsert_academic_result(world.teacher, result_fields(world))['id']
    academic_service.submit_academic_results(world.teacher, result_ids=[r1])

    with pytest.raises(ConflictError, match='SUBMITTED'):
        academic_service.upsert_academic_result(world.teacher, result_fields(world, ca_score=10))
    with pytest.raises(ValidationError, match='Rejection reason is required'):
        academic_service.reject_academic_result(world.admin, r1, '  ')

    rejected = academic_service.reject_academic_result(world.admin, r1, 'CA looks wrong')
    assert rejected['status'] == 'REJECTED'
    assert rejected['hod_comment'] == 'Rejected: CA looks wrong'

    revised = academic_service.upsert_academic_result(world.teacher, result_fields(world, ca_score=10))
    assert revised['id'] == r1
    assert revised['status'] == 'DRAFT'
    assert revised['total_score'] == 55


def test_review_is_school_scoped(world):
    r1 = academic_service.upsert_academic_result(world.teacher, result_fields(world))['id']
    academic_service.submit_academic_results(world.teacher, result_ids=[r1])
    with pytest.raises(ForbiddenError):
        academic_service.approve_academic_result(world.other_admin, r1)
    assert academic_service.approve_academic_result(world.super_admin, r1)['status'] == 'APPROVED'


def test_lesson_plan_review_cycle(world):
    plan = academic_service.create_lesson_plan(world.teacher, {'title': 'Fractions', 'content': 'Intro'})
    assert plan['status'] == 'DRAFT'
    with pytest.raises(ConflictError, match='Only published'):
        academic_service.review_lesson_plan(world.admin, plan['id'], 'APPROVED')

    plan = academic_service.publish_lesson_plan(world.teacher, plan['id'])
    assert plan['status'] == 'PUBLISHED'
    assert plan['review_status'] == 'PENDING'

    with pytest.raises(ValidationError, match='Review notes are required'):
        academic_service.review_lesson_plan(world.admin, plan['id'], 'NEEDS_REVISION')
    reviewed = academic_service.review_lesson_plan(world.admin, plan['id'], 'NEEDS_REVISION', 'Add examples')
    assert reviewed['lesson_plan']['review_status'] == 'NEEDS_REVISION'

    edited = academic_service.update_lesson_plan(world.teacher, plan['id'], {'content': 'Intro and examples'})
    assert edited['review_status'] == 'PENDING'

    approved = academic_service.review_lesson_plan(world.admin, plan['id'], 'APPROVED')
    assert approved['lesson_plan']['review_status'] == 'APPROVED'
    assert approved['lesson_plan']['reviewed_by'] == world.admin['user_id']
    with pytest.raises(ConflictError):
        academic_service.update_lesson_plan(world.teacher, plan['id'], {'title': 'Late edit'})
    with pytest.raises(ForbiddenError):
        academic_service.publish_lesson_plan(world.other_teacher, plan['id'])


def test_admin_listing_filters_and_counts_by_status(world):
    r1 = academic_service.upsert_academic_result(world.teacher, result_fields(world))['id']
    r2 = academic_service.upsert_academic_result(
        world.teacher, result_fields(world, student_id=world.student2_id)
    )['id']
    academic_service.submit_academic_results(world.teacher, result_ids=[r1])

    listing = academic_service.list_academic_results(world.admin, status='SUBMITTED')
    assert [r['id'] for r in listing['results']] == [r1]
    assert listing['results'][0]['student_name'] == 'Ada'
    assert listing['results'][0]['subject_name'] == 'Mathematics'
    assert listing['statistics'] == {
        'draft': 1, 'submitted': 1, 'approved': 0, 'published': 0, 'rejected': 0, 'total': 2,
    }

    everything = academic_service.list_academic_results(world.admin)
    assert {r['id'] for r in everything['results']} == {r1, r2}

    assert academic_service.list_academic_results(world.other_admin)['statistics']['total'] == 0
    scoped = academic_service.list_academic_results(world.super_admin, school_id=world.school_id)
    assert scoped['statistics']['total'] == 2
    with pytest.raises(UnauthorizedError):
        academic_service.list_academic_results(world.teacher)


def test_teacher_lists_only_own_results(world):
    r1 = academic_service.upsert_academic_result(world.teacher, result_fields(world))['id']
    mine = academic_service.list_teacher_academic_results(world.teacher, term='First Term')
    assert [r['id'] for r in mine] == [r1]
    assert academic_service.list_teacher_academic_results(world.other_teacher) == []
    assert academic_service.list_teacher_academic_results(world.teacher, status='SUBMITTED') == []


def test_only_own_drafts_can_be_deleted(world):
    r1 = academic_service.upsert_academic_result(world.teacher, result_fields(world))['id']
    r2 = academic_service.upsert_academic_result(
        world.teacher, result_fields(world, student_id=world.student2_id)
    )['id']
    academic_service.submit_academic_results(world.teacher, result_ids=[r2])

    with pytest.raises(ForbiddenError):
        academic_service.delete_academic_result(world.other_teacher, r1)
    with pytest.raises(ConflictError, match='SUBMITTED'):
        academic_service.delete_academic_result(world.teacher, r2)
    with pytest.raises(NotFoundError):
        academic_service.delete_academic_result(world.teacher, 'missing')

    academic_service.delete_academic_result(world.teacher, r1)
    with db_connection() as conn:
        assert fetch_one(conn.cursor(), 'SELECT id FROM academic_results WHERE id = ?', (r1,)) is None
    assert status_of(r2) == 'SUBMITTED'
