"""Error types raised and collected by conform."""

from typing import Any

# Sentinel distinguishing "no value given" from an explicit None
_MISSING = object()


class ConformError(Exception):
    """Base class for every error raised by conform."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(ConformError, TypeError):
    """
    A schema declaration is structurally invalid.

    Raised while the schema is being built (conflicting nested/leaf paths,
    unknown type names, non-callable transforms, malformed validators), so a
    half-built schema is never handed out.
    """


class CastError(ConformError):
    """
    A raw value could not be coerced to the declared field type.

    Parameters
    ----------
    type : str
        Type tag of the failing cast (``"number"``, ``"date"``, ...).
    value : Any
        The offending raw value.
    path : str, optional
        Path of the field that attempted the cast.
    """

    def __init__(self, type: str, value: Any, path: str | None = None):
        super().__init__(
            f'Cast to {type} failed for value "{value}" at path "{path}"'
        )
        self.type = type
        self.value = value
        self.path = path


class ValidatorError(ConformError):
    """
    A single validator rejected the value of a path.

    The value is only part of the message when one was given, so
    ``ValidatorError("name", "required")`` reads cleaner than a message
    ending in ``with value `None```.
    """

    def __init__(
        self,
        path: str,
        type: str | None = None,
        value: Any = _MISSING,
        message: str | None = None,
    ):
        if message is None:
            tag = f'"{type}" ' if type else ""
            message = f"Validator {tag}failed for path {path}"
            if value is not _MISSING:
                message += f" with value `{value}`"
        super().__init__(message)
        self.path = path
        self.type = type
        self.value = None if value is _MISSING else value

    def __str__(self) -> str:
        return self.message


class ValidationError(ConformError):
    """
    Aggregate of every failing path of one validation pass.

    ``errors`` maps a path to its `ValidatorError` or `CastError`. Paths that
    passed are absent.
    """

    def __init__(self, errors: dict[str, ConformError] | None = None):
        super().__init__("Validation failed")
        self.errors: dict[str, ConformError] = dict(errors or {})

    def __str__(self) -> str:
        messages = [str(err) for err in self.errors.values() if err is not self]
        return "ValidationError: " + ", ".join(messages)

    def __contains__(self, path: str) -> bool:
        return path in self.errors
