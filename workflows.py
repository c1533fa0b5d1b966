"""
Status enums and transition tables for every record with a lifecycle.

Each workflow is a table of (current status, action) -> next status. A pair
that is not in the table is refused, so a record can never skip a step or
move backwards except along an explicit rejection path.
"""

import enum

from errors import ConflictError


class Role(str, enum.Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    SCHOOL_ADMIN = "SCHOOL_ADMIN"
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"


class QuestionType(str, enum.Enum):
    MCQ = "MCQ"
    TRUE_FALSE = "TRUE_FALSE"
    SHORT_ANSWER = "SHORT_ANSWER"
    ESSAY = "ESSAY"


class ResultStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"


class ExamStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"


class AttemptStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"


class LessonPlanStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"


class ReviewStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    NEEDS_REVISION = "NEEDS_REVISION"


class SchoolStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Workflow:
    def __init__(self, name, status_enum, transitions):
        self.name = name
        self.status_enum = status_enum
        self.transitions = {
            (status_enum(current), action): status_enum(target)
            for (current, action), target in transitions.items()
        }

    @property
    def actions(self):
        return sorted({action for _current, action in self.transitions})

    def coerce(self, status):
        try:
            return self.status_enum(status)
        except ValueError:
            raise ConflictError(f"Unknown {self.name} status: {status}")

    def can(self, current, action):
        return (self.coerce(current), action) in self.transitions

    def next_state(self, current, action):
        current = self.coerce(current)
        target = self.transitions.get((current, action))
        if target is None:
            raise ConflictError(f"Cannot {action} {self.name} with status: {current.value}")
        return target

    def sources(self, action):
        """Statuses from which `action` is allowed."""
        return [current for (current, act) in self.transitions if act == action]


ACADEMIC_RESULT_WORKFLOW = Workflow('result', ResultStatus, {
    (ResultStatus.DRAFT, 'submit'): ResultStatus.SUBMITTED,
    (ResultStatus.SUBMITTED, 'approve'): ResultStatus.APPROVED,
    (ResultStatus.SUBMITTED, 'reject'): ResultStatus.REJECTED,
    (ResultStatus.APPROVED, 'publish'): ResultStatus.PUBLISHED,
    (ResultStatus.REJECTED, 'revise'): ResultStatus.DRAFT,
})

EXAM_WORKFLOW = Workflow('exam', ExamStatus, {
    (ExamStatus.DRAFT, 'submit'): ExamStatus.PENDING_APPROVAL,
    (ExamStatus.PENDING_APPROVAL, 'approve'): ExamStatus.APPROVED,
    (ExamStatus.PENDING_APPROVAL, 'reject'): ExamStatus.REJECTED,
    (ExamStatus.APPROVED, 'publish'): ExamStatus.PUBLISHED,
    (ExamStatus.REJECTED, 'revise'): ExamStatus.DRAFT,
})

ATTEMPT_WORKFLOW = Workflow('attempt', AttemptStatus, {
    (AttemptStatus.IN_PROGRESS, 'submit'): AttemptStatus.SUBMITTED,
})

LESSON_PLAN_WORKFLOW = Workflow('lesson plan', LessonPlanStatus, {
    (LessonPlanStatus.DRAFT, 'publish'): LessonPlanStatus.PUBLISHED,
})

LESSON_PLAN_REVIEW_WORKFLOW = Workflow('lesson plan review', ReviewStatus, {
    (ReviewStatus.PENDING, 'approve'): ReviewStatus.APPROVED,
    (ReviewStatus.PENDING, 'reject'): ReviewStatus.REJECTED,
    (ReviewStatus.PENDING, 'request_revision'): ReviewStatus.NEEDS_REVISION,
    (ReviewStatus.REJECTED, 'resubmit'): ReviewStatus.PENDING,
    (ReviewStatus.NEEDS_REVISION, 'resubmit'): ReviewStatus.PENDING,
})

SCHOOL_WORKFLOW = Workflow('school', SchoolStatus, {
    (SchoolStatus.PENDING, 'approve'): SchoolStatus.APPROVED,
    (SchoolStatus.PENDING, 'reject'): SchoolStatus.REJECTED,
    (SchoolStatus.APPROVED, 'suspend'): SchoolStatus.SUSPENDED,
    (SchoolStatus.SUSPENDED, 'reactivate'): SchoolStatus.APPROVED,
})

PAYMENT_WORKFLOW = Workflow('payment', PaymentStatus, {
    (PaymentStatus.PENDING, 'succeed'): PaymentStatus.SUCCESS,
    (PaymentStatus.PENDING, 'fail'): PaymentStatus.FAILED,
})
