"""Error taxonomy shared by the scoring, anti-cheat and submission layers.

Routes translate these into HTTP responses; nothing here is fatal to the
process, every failure is scoped to the single action that raised it.
"""


class QuizError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AnswerValidationError(QuizError):
    """Malformed or missing answer, rejected before any store write."""

    status_code = 422


class SubmissionRejected(QuizError):
    """Action refused because of a terminal state (eliminated, game ended, ...)."""

    status_code = 409


class NotFound(QuizError):
    status_code = 404


class StoreUnavailable(QuizError):
    """Backend or transport failure. Transient; safe to retry only when idempotent."""

    status_code = 503
