"""Failure taxonomy shared by storage, ingestion, analytics and the HTTP boundary."""


class TelemetryError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(TelemetryError):
    """A reading failed type, range or shape checks at the boundary."""

    def __init__(self, message: str, *, errors: list | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)


class NotFoundError(TelemetryError):
    """No live-state row exists for the requested device."""

    def __init__(self, kind: str, device_id: str) -> None:
        self.kind = kind
        self.device_id = device_id
        super().__init__(f"{kind.capitalize()} {device_id} not found")


class StorageError(TelemetryError):
    """The underlying transactional read or write failed."""

    def __init__(self, message: str, *, operation: str = "") -> None:
        self.operation = operation
        super().__init__(message)
