class TaskManagerError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(TaskManagerError):
    status_code = 404


class UnauthorizedAccess(TaskManagerError):
    """The entity exists but the acting user may not touch it."""

    status_code = 403


class AlreadyExists(TaskManagerError):
    status_code = 409


class ValidationFailure(TaskManagerError):
    status_code = 400


class InvalidToken(TaskManagerError):
    status_code = 401
