"""
Role and ownership rules for every protected action.

An actor is the session view of the caller:
    {'user_id', 'role', 'school_id', 'teacher_id', 'student_id'}
A resource is whatever ownership the target record carries:
    {'school_id', 'teacher_id', 'student_id'}
"""

from errors import ForbiddenError, NotFoundError, UnauthorizedError
from workflows import Role

SUPER_ADMIN = Role.SUPER_ADMIN.value
SCHOOL_ADMIN = Role.SCHOOL_ADMIN.value
TEACHER = Role.TEACHER.value
STUDENT = Role.STUDENT.value

ADMINS = (SUPER_ADMIN, SCHOOL_ADMIN)

# action -> (roles allowed, ownership scope)
RULES = {
    'exam.create': ((TEACHER,), 'school'),
    'exam.list': ((TEACHER, SCHOOL_ADMIN, SUPER_ADMIN), None),
    'exam.submit_for_approval': ((TEACHER,), 'owner'),
    'exam.review': ((SCHOOL_ADMIN,), 'school'),
    'exam.take': ((STUDENT,), 'school'),
    'exam.reset_attempts': ((TEACHER,), 'owner'),
    'exam.view_results': ((TEACHER,), 'owner'),
    'exam.grade': ((TEACHER,), 'owner'),
    'exam.manual_control': ((SCHOOL_ADMIN,), 'school'),
    'academic_result.create': ((TEACHER,), 'school'),
    'academic_result.list_own': ((TEACHER,), None),
    'academic_result.submit': ((TEACHER,), 'owner'),
    'academic_result.delete': ((TEACHER,), 'owner'),
    'academic_result.review': (ADMINS, 'school'),
    'academic_result.list': (ADMINS, 'school'),
    'academic_result.publish': (ADMINS, 'school'),
    'academic_result.view_own': ((STUDENT,), 'self'),
    'lesson_plan.create': ((TEACHER,), 'school'),
    'lesson_plan.publish': ((TEACHER,), 'owner'),
    'lesson_plan.review': ((SCHOOL_ADMIN,), 'school'),
    'school.review': ((SUPER_ADMIN,), None),
    'school.manage_users': ((SCHOOL_ADMIN,), 'school'),
    'user.manage': (ADMINS, 'school'),
    'grading_scale.manage': ((SCHOOL_ADMIN,), 'school'),
    'payment.initialize': ((SCHOOL_ADMIN,), 'school'),
}

DENY_MESSAGES = {
    'school': 'You can only access records from your school',
    'owner': 'You can only manage your own records',
    'self': 'You can only access your own records',
}


def check_access(actor, action, resource=None):
    """Evaluate one action for one actor. Returns (allowed, status_code, message)."""
    if action not in RULES:
        raise KeyError(f"No access rule for action: {action}")
    roles, scope = RULES[action]
    role = (actor or {}).get('role')
    if not actor or not actor.get('user_id') or not role:
        return False, 401, 'Unauthorized'
    if role not in roles:
        return False, 401, 'Unauthorized'
    if resource is None or scope is None:
        return True, 200, ''

    if role == SUPER_ADMIN and scope == 'school':
        return True, 200, ''

    school_id = resource.get('school_id')
    if school_id is not None and school_id != actor.get('school_id'):
        return False, 403, DENY_MESSAGES['school']
    if scope == 'owner' and resource.get('teacher_id') != actor.get('teacher_id'):
        return False, 403, DENY_MESSAGES['owner']
    if scope == 'self' and resource.get('student_id') != actor.get('student_id'):
        return False, 403, DENY_MESSAGES['self']
    return True, 200, ''


def require(actor, action, resource=None):
    allowed, status, message = check_access(actor, action, resource)
    if allowed:
        return
    if status == 401:
        raise UnauthorizedError(message)
    raise ForbiddenError(message)


def require_profile(actor, key, label):
    """Return the actor's profile id; a missing profile answers 404."""
    profile_id = (actor or {}).get(key)
    if not profile_id:
        raise NotFoundError(f'{label} profile not found')
    return profile_id
