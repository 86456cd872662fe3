"""Project-level exception hierarchy."""


class PadmaError(Exception):
    """Base for all padma-wa exceptions."""


class SessionError(PadmaError):
    """Session lifecycle failed."""


class SessionNotFound(SessionError):
    """No session is registered under the requested id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' not found")
        self.session_id = session_id


class AuthRequired(SessionError):
    """Session exists but has no verified identity yet."""


class TransientConnectionLoss(SessionError):
    """Connection dropped for a retryable reason."""


class TerminalLogout(SessionError):
    """Connection was logged out; the session cannot be resumed."""


class ChallengeSuperseded(SessionError):
    """A newer caller took over the pending QR challenge."""


class PersistenceFailure(PadmaError):
    """Credential store I/O failed."""


class ConnectionClientError(PadmaError):
    """Connection client could not be loaded or failed to open a handle."""
