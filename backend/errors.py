class PanelError(Exception):
    """Base class for errors surfaced to API callers.

    ``status_code`` is the HTTP status the API layer answers with.
    """

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PanelError):
    status_code = 400


class NotFoundError(PanelError):
    status_code = 404


class RconConnectionError(PanelError):
    """RCON dial failed on every attempt."""

    status_code = 502


class NotConnectedError(PanelError):
    status_code = 409


class CommandError(PanelError):
    """RCON command failed mid-exchange. The session is gone by the time this is raised."""

    status_code = 502


class InternalError(PanelError):
    status_code = 500
