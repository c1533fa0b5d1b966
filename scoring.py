"""
Pure scoring and grading helpers. Nothing here touches the database.
"""

import math
import re

from workflows import QuestionType

CHOICE_TYPES = {QuestionType.MCQ.value, QuestionType.TRUE_FALSE.value}
FREE_TEXT_TYPES = {QuestionType.SHORT_ANSWER.value, QuestionType.ESSAY.value}
INDEX_RE = re.compile(r'-?[0-9]+')

DEFAULT_GRADING_SCALE = [
    {'min_score': 90, 'max_score': 100, 'grade': 'A*', 'grade_point': 5.0, 'remark': 'Excellent'},
    {'min_score': 80, 'max_score': 89, 'grade': 'A', 'grade_point': 4.5, 'remark': 'Very Good'},
    {'min_score': 70, 'max_score': 79, 'grade': 'B+', 'grade_point': 4.0, 'remark': 'Good'},
    {'min_score': 60, 'max_score': 69, 'grade': 'B', 'grade_point': 3.5, 'remark': 'Average'},
    {'min_score': 50, 'max_score': 59, 'grade': 'C', 'grade_point': 3.0, 'remark': 'Fair'},
    {'min_score': 40, 'max_score': 49, 'grade': 'D', 'grade_point': 2.0, 'remark': 'Poor'},
    {'min_score': 0, 'max_score': 39, 'grade': 'F', 'grade_point': 0.0, 'remark': 'Fail'},
]


def safe_float(value, default=0.0):
    """float(value), or `default` when it is missing, malformed or not finite."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _option_text(question, response):
    """Map an option index (int or digit string) onto the option text."""
    options = question.get('options')
    if not isinstance(options, list) or isinstance(response, bool):
        return response
    if isinstance(response, int):
        index = response
    elif isinstance(response, str) and INDEX_RE.fullmatch(response.strip()):
        index = int(response.strip())
    else:
        return response
    if 0 <= index < len(options):
        return options[index]
    return response


def _normalize_true_false(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ('true', 'false'):
        return value.strip().lower() == 'true'
    return value


def is_correct(question, response):
    """Exact-match judgement for choice questions; None for anything else."""
    qtype = question.get('type')
    correct = question.get('correct_answer')
    if qtype == QuestionType.MCQ.value:
        if response is None or correct is None:
            return False
        return _option_text(question, response) == correct
    if qtype == QuestionType.TRUE_FALSE.value:
        if response is None or correct is None:
            return False
        return _normalize_true_false(response) == _normalize_true_false(correct)
    return None


def calculate_score(answers, questions):
    """
    Score a set of answers against an exam's questions.

    `total_points` counts every question whether answered or not. Choice
    questions earn their points on an exact match; free-text questions earn
    only the points a teacher awarded by hand, clamped to the question value.

    Returns {'score': float, 'total_points': float}.
    """
    by_question = {}
    for answer in answers:
        by_question[answer.get('question_id')] = answer

    score = 0.0
    total_points = 0.0
    for question in questions:
        points = max(safe_float(question.get('points')), 0.0)
        total_points += points
        answer = by_question.get(question.get('id'))
        if answer is None:
            continue
        qtype = question.get('type')
        if qtype in CHOICE_TYPES:
            if is_correct(question, answer.get('response')):
                score += points
        elif qtype in FREE_TEXT_TYPES:
            awarded = answer.get('points_awarded')
            if awarded is not None:
                score += min(max(safe_float(awarded), 0.0), points)
    return {'score': score, 'total_points': total_points}


def percentage(score, total_points):
    """Whole-number percentage, rounded half up; 0 when nothing is obtainable."""
    if not total_points:
        return 0
    return int(math.floor(100.0 * score / total_points + 0.5))


def exam_status(exam, now):
    """
    Availability of an exam: 'upcoming', 'active' or 'completed'.

    Manual control overrides the time window; otherwise the window is
    inclusive at both ends.
    """
    if exam.get('manual_control'):
        if exam.get('is_completed'):
            return 'completed'
        if exam.get('is_live'):
            return 'active'
        return 'upcoming'
    if now < exam['start_time']:
        return 'upcoming'
    if now <= exam['end_time']:
        return 'active'
    return 'completed'


def calculate_grade(total_score, scores_obtainable=100, grading_scale=None):
    scale = grading_scale or DEFAULT_GRADING_SCALE
    pct = (total_score / scores_obtainable) * 100 if scores_obtainable else 0
    for band in scale:
        if band['min_score'] <= pct <= band['max_score']:
            return {
                'grade': band['grade'],
                'grade_point': float(band['grade_point']),
                'remark': band['remark'],
            }
    # Scores between integer bands (e.g. 89.5) fall into the band below.
    for band in sorted(scale, key=lambda b: b['min_score'], reverse=True):
        if pct >= band['min_score']:
            return {
                'grade': band['grade'],
                'grade_point': float(band['grade_point']),
                'remark': band['remark'],
            }
    return {'grade': 'F', 'grade_point': 0.0, 'remark': 'Fail'}


def calculate_gpa(results):
    """Mean grade point over a student's results, to two places."""
    if not results:
        return {'gpa': 0, 'total_grade_points': 0, 'number_of_subjects': 0}
    total = sum(safe_float(r.get('grade_point')) for r in results)
    return {
        'gpa': round(total / len(results), 2),
        'total_grade_points': total,
        'number_of_subjects': len(results),
    }
