"""On-track rule and remedial task selection for daily check-ins."""

QUIZ_SCORE_THRESHOLD = 7
FOCUS_MINUTES_THRESHOLD = 60
MAX_QUIZ_SCORE = 10

STATUS_ON_TRACK = "On Track"
STATUS_PENDING_REVIEW = "Pending Mentor Review"

COMBINED_REMEDIATION = (
    "1. Complete chapter revision exercises\n"
    "2. Practice focus techniques for 30 minutes\n"
    "3. Retake the quiz (Target: 7+/10)"
)
QUIZ_REMEDIATION = (
    "1. Review incorrect quiz answers\n"
    "2. Complete practice problems\n"
    "3. Retake the quiz (Target: 7+/10)"
)
FOCUS_REMEDIATION = (
    "1. Implement Pomodoro technique\n"
    "2. Track focus time daily\n"
    "3. Reach 60+ minutes tomorrow"
)


def is_on_track(quiz_score: int, focus_minutes: int) -> bool:
    return quiz_score >= QUIZ_SCORE_THRESHOLD and focus_minutes >= FOCUS_MINUTES_THRESHOLD


def derive_status(quiz_score: int, focus_minutes: int) -> str:
    return STATUS_ON_TRACK if is_on_track(quiz_score, focus_minutes) else STATUS_PENDING_REVIEW


def build_remedial_tasks(quiz_score: int, focus_minutes: int) -> str:
    """Pick the remediation text for a check-in that missed the on-track bar.

    Both scores low gets the combined plan; otherwise whichever one is low
    decides. An on-track pair falls through to the focus plan, matching the
    last branch of the rule, but callers only ask for pending check-ins.
    """
    quiz_low = quiz_score < QUIZ_SCORE_THRESHOLD
    focus_low = focus_minutes < FOCUS_MINUTES_THRESHOLD
    if quiz_low and focus_low:
        return COMBINED_REMEDIATION
    if quiz_low:
        return QUIZ_REMEDIATION
    return FOCUS_REMEDIATION


def validate_scores(quiz_score, focus_minutes) -> str | None:
    """Return an error message for unusable check-in values, or None if valid."""
    if quiz_score is None or focus_minutes is None:
        return "quizScore and focusMinutes are required"
    for name, value in (("quizScore", quiz_score), ("focusMinutes", focus_minutes)):
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int):
            return f"{name} must be an integer"
    if not 0 <= quiz_score <= MAX_QUIZ_SCORE:
        return f"quizScore must be between 0 and {MAX_QUIZ_SCORE}"
    if focus_minutes < 0:
        return "focusMinutes must not be negative"
    return None
