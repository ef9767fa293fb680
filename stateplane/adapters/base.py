"""
Provider base — the contract between the engine and resource types.

Each resource type (queue, bucket, worker, ...) is implemented by a
Provider outside the engine. The engine only talks to providers
through this protocol and only through the ProviderRegistry.

Providers receive decrypted props and outputs (Secret values stay
wrapped) and return plain output mappings. Unlike the engine, a
provider is expected to raise on failure: ProviderError and its
subclasses carry meaning (NotFoundError, AlreadyExistsError), anything
else is wrapped into a ProviderError by the runtime.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from stateplane.core.errors import NotFoundError


class ProviderContext(BaseModel):
    """Everything a provider needs to know about the resource it handles."""

    app: str
    stage: str
    type: str
    id: str
    path: str
    operation: str
    seq: int = 0
    replacing: bool = False     # create called to replace an existing resource

    @property
    def physical_name(self) -> str:
        """Deterministic physical name: ``<app>-<stage>-<id>``."""
        return f"{self.app}-{self.stage}-{self.id}".lower()


class Provider(ABC):
    """Abstract base class for all resource providers.

    To create a new provider:
        1. Subclass Provider
        2. Implement type, create, update, delete (and adopt if the
           resource can be looked up by identity)
        3. Register it in the ProviderRegistry
    """

    @property
    @abstractmethod
    def type(self) -> str:
        """The type tag this provider handles (e.g. 'Queue')."""

    @abstractmethod
    def create(self, ctx: ProviderContext, props: dict[str, Any]) -> dict[str, Any]:
        """Create the physical resource and return its output.

        Raise AlreadyExistsError if a resource with this identity
        already exists.
        """

    @abstractmethod
    def update(
        self,
        ctx: ProviderContext,
        props: dict[str, Any],
        prior_output: dict[str, Any],
    ) -> dict[str, Any]:
        """Bring the resource in line with *props* and return its new output.

        Raise ReplaceRequested when the change cannot be made in place.
        """

    @abstractmethod
    def delete(self, ctx: ProviderContext, prior_output: dict[str, Any]) -> None:
        """Delete the physical resource. Deleting a missing resource is not an error."""

    def adopt(self, ctx: ProviderContext, props: dict[str, Any]) -> dict[str, Any]:
        """Find an existing physical resource and return its output.

        Default: nothing can be adopted.

        Raises:
            NotFoundError: No physical resource matches this identity.
        """
        raise NotFoundError(f"{self.type} does not support adoption", path=ctx.path)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} type={self.type!r}>"
