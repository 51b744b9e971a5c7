"""
Registration failure types.

Every failure carries a ``kind`` string so callers that forward results to
other services can report it without inspecting the class hierarchy.
"""


class RegistrationError(Exception):
    """Base class for registration failures."""

    kind: str = "registration_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)


class InsufficientPointsError(RegistrationError):
    """The scan or the model is empty after filtering at the coarsest level."""

    kind = "insufficient_points"


class ICPFailedError(RegistrationError):
    """No seed produced a usable alignment."""

    kind = "icp_failed"
