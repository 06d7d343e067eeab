# Domain errors raised by the token, response and lifecycle layers.
# Every one of them is recoverable at the request boundary and maps to a 4xx.


class SurveyError(Exception):
    """Base class for survey domain errors.

    Attributes:
        reason (str): Stable machine-readable code, e.g. "TokenExpired".
        status_code (int): HTTP status the error maps to.
    """

    reason = "SurveyError"
    status_code = 400
    default_message = "Survey request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class TokenNotFound(SurveyError):
    reason = "TokenNotFound"
    status_code = 404
    default_message = "Token not found"


class TokenAlreadyUsed(SurveyError):
    reason = "TokenAlreadyUsed"
    default_message = "Token already used"


class TokenExpired(SurveyError):
    reason = "TokenExpired"
    default_message = "Token expired"


class AlreadyCompletedError(SurveyError):
    reason = "AlreadyCompleted"
    default_message = "Survey already completed"


class ResponseClosedError(SurveyError):
    reason = "ResponseClosed"
    default_message = "Response is closed and can no longer be edited"


class ResponseNotFoundError(SurveyError):
    reason = "ResponseNotFound"
    default_message = "No saved answers to submit"


class IncompleteResponseError(SurveyError):
    reason = "IncompleteResponse"
    default_message = "Required questions are unanswered"


class InvalidAnswerError(SurveyError):
    reason = "InvalidAnswer"
    default_message = "Invalid answer"


class InvalidSurveyError(SurveyError):
    reason = "InvalidSurvey"
    default_message = "Invalid survey definition"


class InvalidStateError(SurveyError):
    reason = "InvalidState"
    status_code = 409
    default_message = "Survey is not in a valid state for this operation"


TOKEN_ERRORS = {
    TokenNotFound.reason: TokenNotFound,
    TokenAlreadyUsed.reason: TokenAlreadyUsed,
    TokenExpired.reason: TokenExpired,
}
