"""Exceptions raised by the event workflow.

Every error carries a message that can be shown to the user as is.
"""


class ClubBotError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


# Malformed input: the stage is not advanced and the session stays intact
class ValidationError(ClubBotError):
    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class InvalidUploadError(ValidationError):
    pass


class AuthorizationError(ClubBotError):
    pass


# State errors: the action conflicts with the current state, nothing changes
class StateError(ClubBotError):
    pass


class SessionExpiredError(StateError):
    def __init__(self, message: str = "Your event creation session has expired. Start again with /create_event."):
        super().__init__(message)


class WizardStageError(StateError):
    pass


class ClubUnavailableError(StateError):
    pass


class NotFoundError(StateError):
    pass


class AlreadyDecidedError(StateError):
    pass


class EventNotOpenError(StateError):
    pass


class DuplicateRegistrationError(StateError):
    pass


class CapacityReachedError(StateError):
    def __init__(self, message: str = "Registration failed: capacity reached."):
        super().__init__(message)


class IneligibleError(ClubBotError):
    pass


class DependencyError(ClubBotError):
    pass
