from __future__ import annotations


class InterpreterError(Exception):
    """Base class for every caller-facing error raised by psych_interpreter."""


class CapabilityNotImplemented(InterpreterError, LookupError):
    """An analysis type is not registered, or lacks a required operation."""

    def __init__(self, message: str, *, analysis_type: str | None = None, operation: str | None = None) -> None:
        super().__init__(message)
        self.analysis_type = analysis_type
        self.operation = operation


class DataShapeError(InterpreterError, ValueError):
    """Fitted-model data or variable metadata does not have the expected structure."""


class SessionTypeMismatch(InterpreterError, ValueError):
    """A session declared for one analysis type was reused for another."""


class LLMInvocationError(InterpreterError, RuntimeError):
    """The chat transport or provider failed. Never retried internally."""


class ParameterValidationError(InterpreterError, ValueError):
    """A configuration value is outside its accepted range or choice set."""


__all__ = [
    "InterpreterError",
    "CapabilityNotImplemented",
    "DataShapeError",
    "SessionTypeMismatch",
    "LLMInvocationError",
    "ParameterValidationError",
]
