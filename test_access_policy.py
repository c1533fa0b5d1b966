import pytest

from access_policy import RULES, check_access, require, require_profile
from errors import ForbiddenError, NotFoundError, UnauthorizedError

TEACHER = {'user_id': 'u1', 'role': 'TEACHER', 'school_id': 'S1', 'teacher_id': 'T1'}
STUDENT = {'user_id': 'u2', 'role': 'STUDENT', 'school_id': 'S1', 'student_id': 'ST1'}
ADMIN = {'user_id': 'u3', 'role': 'SCHOOL_ADMIN', 'school_id': 'S1'}
SUPER = {'user_id': 'u4', 'role': 'SUPER_ADMIN', 'school_id': None}


def test_missing_actor_is_unauthorized():
    assert check_access(None, 'exam.take') == (False, 401, 'Unauthorized')
    assert check_access({'role': 'STUDENT'}, 'exam.take')[1] == 401


def test_wrong_role_is_unauthorized():
    allowed, status, _ = check_access(STUDENT, 'exam.reset_attempts')
    assert not allowed
    assert status == 401
    with pytest.raises(UnauthorizedError):
        require(TEACHER, 'exam.manual_control')


def test_owner_scope_checks_teacher_and_school():
    assert check_access(TEACHER, 'exam.reset_attempts', {'school_id': 'S1', 'teacher_id': 'T1'})[0]
    assert check_access(TEACHER, 'exam.reset_attempts', {'school_id': 'S1', 'teacher_id': 'T2'})[1] == 403
    assert check_access(TEACHER, 'exam.reset_attempts', {'school_id': 'S2', 'teacher_id': 'T1'})[1] == 403


def test_school_scope_blocks_other_schools():
    with pytest.raises(ForbiddenError):
        require(ADMIN, 'exam.manual_control', {'school_id': 'S2'})
    require(ADMIN, 'exam.manual_control', {'school_id': 'S1'})


def test_super_admin_bypasses_school_scope_where_admitted():
    assert check_access(SUPER, 'academic_result.publish', {'school_id': 'S9'})[0]
    assert check_access(SUPER, 'exam.manual_control', {'school_id': 'S9'})[1] == 401


def test_self_scope_is_the_student_profile():
    assert check_access(STUDENT, 'academic_result.view_own', {'student_id': 'ST1'})[0]
    assert check_access(STUDENT, 'academic_result.view_own', {'student_id': 'ST2'})[1] == 403


def test_unknown_action_is_a_programming_error():
    with pytest.raises(KeyError):
        check_access(TEACHER, 'exam.teleport')


def test_every_rule_admits_at_least_one_role():
    for action, (roles, _scope) in RULES.items():
        assert roles, action


def test_require_profile():
    assert require_profile(TEACHER, 'teacher_id', 'Teacher') == 'T1'
    with pytest.raises(NotFoundError, match='Student profile not found'):
        require_profile(TEACHER, 'student_id', 'Student')
