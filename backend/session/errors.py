"""Errors raised for local misuse of a session."""


class SessionError(Exception):
    """Base class for operations the session refuses."""


class InvalidTransition(SessionError):
    def __init__(self, current, requested) -> None:
        super().__init__(f"Cannot move from {current.value} to {requested.value}")
        self.current = current
        self.requested = requested


class NotConnected(SessionError):
    def __init__(self, message: str = "Not connected") -> None:
        super().__init__(message)


class TransferBusy(SessionError):
    def __init__(self, message: str = "Another transfer is in progress") -> None:
        super().__init__(message)
