"""
Base protocol and types for the remote data store boundary.

The remote store is the shared, authoritative copy of every project. The
sync engine pulls snapshots and change streams from it and pushes queued
mutations to it. Backends differ only in transport.

Invariants:
    - apply_mutation either succeeds, or raises TransientNetworkFailure
      (retry later) or RemoteRejection (never retry automatically)
    - CREATE and DELETE are idempotent; re-pushing a delivered mutation is safe
    - The change stream emits every existing feature as ADDED first

How to change safely:
    - Protocol changes require updating all implementations
    - Keep failure classification consistent across backends
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import (
    TYPE_CHECKING,
    AsyncIterator,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)
import logging

from ..model.entities import Feature, Observation, Project, User
from ..model.mutation import Mutation

if TYPE_CHECKING:
    from ..config import RemoteConfig

logger = logging.getLogger(__name__)


class RemoteChangeType(Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class RemoteChange:
    """A change to a feature in the remote store.

    Attributes:
        type: Kind of change
        feature_id: Feature that changed
        feature: New remote snapshot (None for REMOVED)
    """

    type: RemoteChangeType
    feature_id: str
    feature: Optional[Feature] = None


@runtime_checkable
class RemoteDataStore(Protocol):
    """Protocol for remote data store backends.

    Example:
        >>> remote = HttpRemoteDataStore("https://ground.example.org/api")
        >>> await remote.connect()
        >>> project = await remote.load_project("project_1")
        >>> await remote.apply_mutation(mutation, user)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Prepare the backend for use."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release transport resources."""
        ...

    @abstractmethod
    async def load_project(self, project_id: str) -> Optional[Project]:
        """Fetch a project definition.

        Returns:
            Project, or None if the remote store has no such project

        Raises:
            TransientNetworkFailure: If the remote store is unreachable
        """
        ...

    @abstractmethod
    async def load_features(self, project_id: str) -> List[Feature]:
        """Fetch every feature of a project."""
        ...

    @abstractmethod
    async def load_observations(self, project_id: str, feature_id: str) -> List[Observation]:
        """Fetch every observation of a feature."""
        ...

    @abstractmethod
    def feature_changes_once_and_stream(self, project_id: str) -> AsyncIterator[RemoteChange]:
        """Yield every current feature as ADDED, then each later change.

        The stream runs until the consumer closes it.
        """
        ...

    @abstractmethod
    async def apply_mutation(self, mutation: Mutation, user: User) -> None:
        """Deliver one mutation.

        Args:
            mutation: Queued mutation
            user: Author, recorded in the document's audit info

        Raises:
            TransientNetworkFailure: Unreachable, timeout, 5xx or 429
            RemoteRejection: The remote store refused the mutation
        """
        ...


def create_remote_store(config: "RemoteConfig") -> RemoteDataStore:
    """Factory function to create a remote store from configuration.

    Args:
        config: Remote store configuration

    Returns:
        Appropriate RemoteDataStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import RemoteBackend
    from .http import HttpRemoteDataStore
    from .memory import InMemoryRemoteDataStore

    if config.backend == RemoteBackend.MEMORY:
        return InMemoryRemoteDataStore()
    elif config.backend == RemoteBackend.HTTP:
        return HttpRemoteDataStore(
            base_url=config.base_url,
            api_token=config.api_token,
            timeout_seconds=config.timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
        )
    else:
        raise ValueError(f"Unsupported remote backend: {config.backend}")
