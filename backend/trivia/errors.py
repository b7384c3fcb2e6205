class GameError(Exception):
    """A request-local failure reported back to the requesting connection only."""

    code = "game_error"
    default_message = "Request could not be completed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class SessionNotFoundError(GameError):
    code = "session_not_found"
    default_message = "Game not found"


class SessionAlreadyStartedError(GameError):
    code = "session_already_started"
    default_message = "Game already started"


class NameTakenError(GameError):
    code = "name_taken"
    default_message = "Name taken"


class InvalidRoleError(GameError):
    code = "invalid_role"
    default_message = "Connection is not allowed to do that"


class SessionFullError(GameError):
    code = "session_full"
    default_message = "Game is full"


class InvalidPayloadError(GameError):
    code = "invalid_payload"
    default_message = "Malformed message"
