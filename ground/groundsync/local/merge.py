"""
Replay of pending mutations on top of entity snapshots.

Pure functions with no I/O - fully testable. The local store uses these to
apply a mutation optimistically and to merge a remote snapshot with the
mutations that have not been delivered yet.

Merge rules:
    - Mutations are replayed oldest first (client timestamp, then queue id)
    - Observation responses merge field by field; the mutation that last
      touched a field wins, untouched fields keep the snapshot's value
    - Feature location is replaced wholesale by the last mutation carrying one
    - A DELETE marks the entity DELETED
    - last_modified is the author and client timestamp of the last mutation
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, Iterable, Sequence, Set

from ..model.entities import AuditInfo, EntityState, Feature, Observation, ResponseValue, User
from ..model.mutation import (
    FeatureMutation,
    MutationType,
    ObservationMutation,
    ResponseDelta,
    sort_key,
    sort_mutations,
)

logger = logging.getLogger(__name__)


def apply_response_deltas(
    responses: Dict[str, ResponseValue],
    deltas: Iterable[ResponseDelta],
) -> Dict[str, ResponseValue]:
    """Apply response deltas to a copy of a response map.

    Args:
        responses: Current responses keyed by field id
        deltas: Changes to apply in order

    Returns:
        New response map; a delta with new_value None removes the field
    """
    merged = dict(responses)
    for delta in deltas:
        if delta.new_value is None:
            merged.pop(delta.field_id, None)
        else:
            merged[delta.field_id] = delta.new_value
    return merged


def apply_observation_mutations(
    observation: Observation,
    mutations: Sequence[ObservationMutation],
    user: User,
) -> Observation:
    """Replay pending mutations on an observation snapshot.

    Args:
        observation: Baseline snapshot (usually the remote copy)
        mutations: Pending mutations for this observation
        user: Author of the last mutation

    Returns:
        Merged observation, or the baseline unchanged if nothing is pending
    """
    if not mutations:
        return observation

    ordered = sort_mutations(mutations)
    responses = dict(observation.responses)
    state = observation.state
    for mutation in ordered:
        if mutation.type == MutationType.DELETE:
            state = EntityState.DELETED
        else:
            responses = apply_response_deltas(responses, mutation.response_deltas)

    last = ordered[-1]
    merged = replace(
        observation,
        responses=responses,
        state=state,
        last_modified=AuditInfo(user=user, client_timestamp=last.client_timestamp),
    )
    logger.debug(
        "Merged observation",
        extra={"observation_id": observation.id, "mutations": len(ordered)},
    )
    return merged


def apply_feature_mutations(
    feature: Feature,
    mutations: Sequence[FeatureMutation],
    user: User,
) -> Feature:
    """Replay pending mutations on a feature snapshot.

    Args:
        feature: Baseline snapshot (usually the remote copy)
        mutations: Pending mutations for this feature
        user: Author of the last mutation

    Returns:
        Merged feature, or the baseline unchanged if nothing is pending
    """
    if not mutations:
        return feature

    ordered = sort_mutations(mutations)
    location = feature.location
    state = feature.state
    for mutation in ordered:
        if mutation.type == MutationType.DELETE:
            state = EntityState.DELETED
        elif mutation.new_location is not None:
            location = mutation.new_location

    last = ordered[-1]
    return replace(
        feature,
        location=location,
        state=state,
        last_modified=AuditInfo(user=user, client_timestamp=last.client_timestamp),
    )


def fields_touched_after(
    mutation: ObservationMutation,
    pending: Iterable[ObservationMutation],
) -> Set[str]:
    """Field ids written by pending mutations ordered after ``mutation``.

    Used when a mutation is enqueued out of client-timestamp order: fields
    that a later mutation already wrote must not be overwritten.
    """
    key = sort_key(mutation)
    touched: Set[str] = set()
    for other in pending:
        if other.observation_id == mutation.observation_id and sort_key(other) > key:
            touched.update(d.field_id for d in other.response_deltas)
    return touched


def location_set_after(
    mutation: FeatureMutation,
    pending: Iterable[FeatureMutation],
) -> bool:
    """Whether a pending mutation ordered after ``mutation`` moved the feature."""
    key = sort_key(mutation)
    return any(
        other.feature_id == mutation.feature_id
        and other.new_location is not None
        and sort_key(other) > key
        for other in pending
    )


def is_superseded(
    mutation: FeatureMutation | ObservationMutation,
    pending: Iterable[FeatureMutation | ObservationMutation],
) -> bool:
    """Whether a pending mutation for the same entity is ordered after ``mutation``."""
    key = sort_key(mutation)
    return any(
        other.entity_id == mutation.entity_id and sort_key(other) > key for other in pending
    )
