"""
Mutation model for the pending-change queue.

A mutation describes one pending local edit to exactly one Feature or
Observation. It carries enough information to be replayed against the
local store (optimistic apply, merge) and against the remote store (push).

Mutation is a tagged union of FeatureMutation and ObservationMutation.
Code that needs type-specific payloads matches on the two variants
explicitly and raises for anything else.

Invariants:
    - Mutation content never changes once enqueued; only retry metadata does
    - Mutations for one entity are ordered by client_timestamp, then queue id
    - id is None until the local store assigns a queue row id

How to change safely:
    - Adding a variant requires updating every dispatch site
    - Keep client_timestamp monotonic per device for ordering guarantees
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, List, Optional, Tuple, Union

from .entities import Point, ResponseValue


class MutationType(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(Enum):
    """Delivery status of a queued mutation.

    FAILED means the last push attempt hit a transient failure and will be
    retried. REJECTED means the remote store refused the mutation; it stays
    queued and is shown to the user as a sync error.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ResponseDelta:
    """Change to a single observation response.

    Attributes:
        field_id: Form field being answered
        new_value: New response, or None to clear it
    """

    field_id: str
    new_value: Optional[ResponseValue]


@dataclass(frozen=True)
class FeatureMutation:
    """Create, update or delete a feature.

    Attributes:
        type: Mutation type
        project_id: Project owning the feature
        feature_id: Target feature
        layer_id: Layer owning the feature
        user_id: Author
        client_timestamp: Logical clock for ordering (Unix ms)
        new_location: Replacement geometry (CREATE/UPDATE)
        id: Queue row id, assigned on enqueue
        retry_count: Number of failed push attempts
        last_error: Message from the last failed push
        sync_status: Delivery status
    """

    type: MutationType
    project_id: str
    feature_id: str
    layer_id: str
    user_id: str
    client_timestamp: int
    new_location: Optional[Point] = None
    id: Optional[int] = None
    retry_count: int = 0
    last_error: str = ""
    sync_status: SyncStatus = SyncStatus.PENDING

    @property
    def entity_id(self) -> str:
        return self.feature_id


@dataclass(frozen=True)
class ObservationMutation:
    """Create, update or delete an observation.

    Attributes:
        type: Mutation type
        project_id: Project owning the observation
        feature_id: Feature the observation belongs to
        layer_id: Layer of the feature
        observation_id: Target observation
        form_id: Form answered by the observation
        user_id: Author
        client_timestamp: Logical clock for ordering (Unix ms)
        response_deltas: Per-field response changes
        id: Queue row id, assigned on enqueue
        retry_count: Number of failed push attempts
        last_error: Message from the last failed push
        sync_status: Delivery status
    """

    type: MutationType
    project_id: str
    feature_id: str
    layer_id: str
    observation_id: str
    form_id: str
    user_id: str
    client_timestamp: int
    response_deltas: Tuple[ResponseDelta, ...] = ()
    id: Optional[int] = None
    retry_count: int = 0
    last_error: str = ""
    sync_status: SyncStatus = SyncStatus.PENDING

    @property
    def entity_id(self) -> str:
        return self.observation_id


Mutation = Union[FeatureMutation, ObservationMutation]


def sort_key(mutation: Mutation) -> Tuple[int, int]:
    # Not-yet-enqueued mutations sort after enqueued ones with the same timestamp.
    return (mutation.client_timestamp, mutation.id if mutation.id is not None else 2**63)


def sort_mutations(mutations: Iterable[Mutation]) -> List[Mutation]:
    """Order mutations oldest first by client timestamp, then queue id."""
    return sorted(mutations, key=sort_key)


def filter_feature_mutations(mutations: Iterable[Mutation]) -> List[FeatureMutation]:
    return [m for m in mutations if isinstance(m, FeatureMutation)]


def filter_observation_mutations(mutations: Iterable[Mutation]) -> List[ObservationMutation]:
    return [m for m in mutations if isinstance(m, ObservationMutation)]


def ids(mutations: Iterable[Mutation]) -> List[int]:
    """Queue ids of the given mutations, skipping unsaved ones."""
    return [m.id for m in mutations if m.id is not None]


def with_status(
    mutation: Mutation,
    status: SyncStatus,
    error: str = "",
    bump_retry: bool = False,
) -> Mutation:
    """Return a copy with updated delivery metadata.

    Args:
        mutation: Mutation to copy
        status: New sync status
        error: Error message to record
        bump_retry: Whether to increment retry_count

    Returns:
        Copy of the mutation; payload fields are untouched
    """
    retry_count = mutation.retry_count + 1 if bump_retry else mutation.retry_count
    return replace(mutation, sync_status=status, last_error=error, retry_count=retry_count)
