from __future__ import annotations

from typing import Any

import msgspec


class BatchLoadError(Exception):
    """Base class for errors raised by sqla_batchloads itself."""


class ConfigurationError(BatchLoadError):
    """Model or relation configuration is invalid.

    Raised synchronously at the call that discovers the problem and never
    retried: undeclared relations, unknown model names, mismatched column
    arity, an uninitialized registry.
    """


class UndeclaredRelationError(ConfigurationError):
    def __init__(self, model: type, name: str) -> None:
        super().__init__(f"No relation {name!r} declared on {model.__name__}")
        self.model = model
        self.name = name


class CompositeKeyError(ConfigurationError):
    """A batched loader was requested for a composite (multi-column) key."""


class BatchSizeMismatchError(BatchLoadError):
    """An unmapped fetch returned a different number of results than keys."""

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(
            f"Batch fetch must return one result per key: expected {expected}, got {received}"
        )
        self.expected = expected
        self.received = received


class UserError(Exception):
    """Domain error raised by application code with a structured payload.

    ``data`` keeps the original payload; mappings and sequences are rendered
    as JSON for the message.

    Example:
        >>> raise UserError({"email": "already registered"})
    """

    model: str = ""

    def __init__(self, data: Any) -> None:
        message = data if isinstance(data, str) else msgspec.json.encode(data).decode()
        super().__init__(message)
        self.data = data


def user_error_for(model_name: str) -> type[UserError]:
    """Create a ``UserError`` subclass tagged with *model_name*."""
    return type(f"{model_name}Error", (UserError,), {"model": model_name})
