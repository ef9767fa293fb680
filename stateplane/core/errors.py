"""
Error taxonomy — every failure the engine surfaces to a caller.

The runtime never swallows these. A provider failure propagates with
the resource path attached, prior state is left intact, and the next
run retries from the same starting point. Retrying is the recovery
mechanism, not internal retry loops.
"""

from __future__ import annotations


class StateplaneError(Exception):
    """Base class for all engine errors."""


# ── Provider failures ────────────────────────────────────────────────


class ProviderError(StateplaneError):
    """A provider create/update/delete/adopt call failed.

    Providers may raise this (or a subclass) directly. Any other
    exception escaping a provider is wrapped in one by the runtime.
    """

    def __init__(
        self,
        message: str,
        *,
        path: str | None = None,
        operation: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.path = path
        self.operation = operation

    def __str__(self) -> str:
        if self.path and self.operation:
            return f"{self.operation} {self.path}: {self.message}"
        if self.path:
            return f"{self.path}: {self.message}"
        return self.message


class NotFoundError(ProviderError):
    """The provider found no physical resource matching the identity."""


class AlreadyExistsError(ProviderError):
    """A create collided with an existing physical resource."""


class ReplaceRequested(Exception):
    """Raised by a provider's ``update`` when the change needs a new resource.

    Not an error: the runtime catches it, creates the replacement and
    schedules the old resource for deletion.
    """

    def __init__(self, force: bool = False):
        super().__init__("replacement requested")
        self.force = force


class ConflictError(StateplaneError):
    """Adopt found nothing to adopt, or a plain create hit an existing resource."""

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(message)
        self.path = path


# ── Secrets ──────────────────────────────────────────────────────────


class SecretError(StateplaneError):
    """A secret could not be processed (missing key material, bad value)."""


class DecryptionError(SecretError):
    """Wrong key or corrupted envelope. Fatal to the run."""


# ── State store ──────────────────────────────────────────────────────


class StoreIOError(StateplaneError):
    """The state backend is unavailable or returned unreadable data."""


class StateNotFoundError(StateplaneError):
    """A read-phase declaration found no recorded state."""


# ── Declarations ─────────────────────────────────────────────────────


class InvalidResourceError(StateplaneError):
    """A declaration has a malformed type tag or id."""


class UnknownResourceTypeError(StateplaneError):
    """No provider is registered for a type tag."""


class DependencyError(StateplaneError):
    """A declaration references a resource not yet applied in this run."""


class ParallelGroupError(StateplaneError):
    """One or more members of a parallel group failed.

    Raised only after every member has settled. ``errors`` maps each
    failed resource path to its exception.
    """

    def __init__(self, errors: dict[str, BaseException]):
        self.errors = errors
        paths = ", ".join(sorted(errors))
        super().__init__(f"{len(errors)} resource(s) failed in parallel group: {paths}")
