"""
Declaration and ResourceOutput — the apply contract.

A Declaration is what calling code asks for; a ResourceOutput is what
comes back. Outputs can be placed inside the props of later
declarations: they serialize by value and turn into dependency edges.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from stateplane.core.errors import InvalidResourceError

_NAME_RE = re.compile(r"^[A-Za-z0-9_.:@-]+$")


class Phase(StrEnum):
    """What a run does with its declarations."""

    UP = "up"        # reconcile: create / update / adopt / no-op
    READ = "read"    # return recorded outputs, never call providers


class Operation(StrEnum):
    """Operation chosen for one declaration."""

    CREATE = "create"
    UPDATE = "update"
    ADOPT = "adopt"
    REPLACE = "replace"
    NOOP = "noop"
    READ = "read"
    DELETE = "delete"


def validate_name(value: str, kind: str) -> str:
    """Check a type tag or resource id.

    Names end up in state paths and file names, so they must be
    non-empty and must not contain ``/``.

    Raises:
        InvalidResourceError: If the name is malformed.
    """
    if not value or not value.strip():
        raise InvalidResourceError(f"{kind} must not be empty")
    if "/" in value:
        raise InvalidResourceError(f"{kind} '{value}' must not contain '/'")
    if not _NAME_RE.match(value):
        raise InvalidResourceError(
            f"{kind} '{value}' may only contain letters, digits and _ . : @ -"
        )
    return value


class Declaration(BaseModel):
    """A caller-supplied description of a desired resource for one run.

    Attributes:
        type:          Provider type tag (e.g. ``Queue``).
        id:            Logical id, unique within the scope.
        props:         Input properties. May contain Secret values and
                       ResourceOutputs of earlier declarations.
        adopt:         Treat a pre-existing physical resource as managed.
        depends_on:    Extra dependencies (paths or ResourceOutputs) not
                       referenced through props.
        always_update: Dispatch ``update`` even when props are unchanged.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    type: str
    id: str
    props: dict[str, Any] = Field(default_factory=dict)
    adopt: bool = False
    depends_on: list[Any] = Field(default_factory=list)
    always_update: bool = False

    def validate_identity(self) -> None:
        validate_name(self.type, "Resource type")
        validate_name(self.id, "Resource id")


class ResourceOutput(Mapping[str, Any]):
    """Read-only output of an applied resource.

    Behaves like a mapping of the provider's output attributes, plus
    the identity of the resource that produced it.
    """

    __slots__ = ("_path", "_type", "_id", "_attributes")

    def __init__(self, path: str, type: str, id: str, attributes: dict[str, Any]):
        self._path = path
        self._type = type
        self._id = id
        self._attributes = dict(attributes)

    @property
    def path(self) -> str:
        return self._path

    @property
    def type(self) -> str:
        return self._type

    @property
    def id(self) -> str:
        return self._id

    @property
    def attributes(self) -> dict[str, Any]:
        """A shallow copy of the output attributes."""
        return dict(self._attributes)

    def __getitem__(self, key: str) -> Any:
        return self._attributes[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._attributes)

    def __len__(self) -> int:
        return len(self._attributes)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ResourceOutput):
            return self._path == other._path and self._attributes == other._attributes
        if isinstance(other, Mapping):
            return self._attributes == dict(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"<ResourceOutput {self._path} keys={sorted(self._attributes)}>"
