"""Typed failures reported by the quiz client.

Local precondition violations are raised from the intent call that caused
them. Failures that happen on the event loop (server ``error`` pushes,
exhausted reconnects) are handed to error listeners as the same types.
"""

from typing import Optional


class QuizClientError(Exception):
    """Base class for every failure the client reports."""


class ConnectFailure(QuizClientError):
    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class NotConnected(QuizClientError):
    pass


class InvalidState(QuizClientError):
    """An intent that the current game phase does not allow."""


class NoActiveQuestion(InvalidState):
    pass


class RoundClosed(InvalidState):
    pass


class SubmissionPending(InvalidState):
    pass


class InvalidAnswer(QuizClientError, ValueError):
    pass


class InvalidDisplayName(QuizClientError, ValueError):
    pass


class RemoteError(QuizClientError):
    """Error pushed by the server over the event stream."""


class ApiError(QuizClientError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SubmissionFailed(QuizClientError):
    pass
