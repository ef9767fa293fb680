"""
Secret — explicit wrapper for values that must never be persisted in clear.

Wrapping is the only way a value is treated as sensitive: the
serializer recognises the type, not the shape of the data. The
plaintext is only reachable through ``get_secret_value()``; repr and
str are masked so a Secret can sit in props, outputs and log calls
without leaking.
"""

from __future__ import annotations

from typing import Any

_MASK = "**********"


class Secret:
    """A sensitive scalar or JSON-serializable structure."""

    __slots__ = ("_value",)

    def __init__(self, value: Any):
        if isinstance(value, Secret):
            value = value.get_secret_value()
        self._value = value

    def get_secret_value(self) -> Any:
        return self._value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Secret):
            return NotImplemented
        return self._value == other._value

    def __hash__(self) -> int:
        return hash(repr(self._value))

    # Immutable: copies share the wrapped value
    def __copy__(self) -> Secret:
        return self

    def __deepcopy__(self, memo: dict) -> Secret:
        return self

    def __repr__(self) -> str:
        return f"Secret('{_MASK}')"

    def __str__(self) -> str:
        return _MASK


def secret(value: Any) -> Secret:
    """Shorthand for ``Secret(value)``."""
    return Secret(value)
