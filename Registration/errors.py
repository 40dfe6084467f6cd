from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Union


class RegistrationError(Exception):
    """Base class for every error raised by the registration package."""


class IoError(RegistrationError, OSError):
    """A volume, transform or configuration file could not be read or written."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None) -> None:
        self.path = Path(path) if path is not None else None
        if self.path is not None:
            message = f"{message} ({self.path})"
        super().__init__(message)


class InvalidConfiguration(RegistrationError, ValueError):
    """Caller error in transform, metric, optimizer or scheduler setup."""


class InvalidParameterCount(InvalidConfiguration):
    def __init__(self, expected: int, received: int, what: str = "transform") -> None:
        self.expected = int(expected)
        self.received = int(received)
        super().__init__(f"{what} expects {self.expected} parameters, got {self.received}")


class RegistrationFailed(RegistrationError, RuntimeError):
    """A metric or transform evaluation could not produce a finite result."""

    def __init__(self, message: str, *, stage: str = "registration", context: Optional[Dict[str, Any]] = None) -> None:
        self.reason = message
        self.stage = stage
        self.context = dict(context or {})
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        text = f"[{stage}] {message}"
        if details:
            text = f"{text} ({details})"
        super().__init__(text)

    def with_context(self, stage: Optional[str] = None, **context: Any) -> "RegistrationFailed":
        """Return a copy enriched with the caller's context (stage, level, file...)."""
        merged = {**self.context, **context}
        return RegistrationFailed(self.reason, stage=stage or self.stage, context=merged)


class FoldingDetected(UserWarning):
    """Jacobian determinant <= 0 somewhere in the deformation field."""
