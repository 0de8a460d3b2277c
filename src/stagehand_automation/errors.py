from __future__ import annotations


class StagehandError(Exception):
    """Base class for errors raised by the runner and its operations."""


class ConfigError(StagehandError):
    pass


class InventoryError(StagehandError):
    pass


class PlaybookError(StagehandError):
    pass


class VarsError(StagehandError):
    pass


class HostUnreachable(StagehandError):
    def __init__(self, host: str, message: str):
        super().__init__(f"{host}: {message}")
        self.host = host


class OperationError(StagehandError):
    """An operation could not converge its target."""

    def __init__(self, message: str, *, path=None):
        if path is not None:
            message = f"{path}: {message}"
        super().__init__(message)
        self.path = path


class ConversionRefused(OperationError):
    """The declared file state would require a disallowed conversion."""
