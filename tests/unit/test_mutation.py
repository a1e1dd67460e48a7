"""
Unit tests for the mutation model.

Tests cover:
- Ordering by client timestamp, then queue id
- Variant filters
- Delivery metadata copies
"""

from dataclasses import replace

from ground.groundsync.model import SyncStatus
from ground.groundsync.model.mutation import (
    filter_feature_mutations,
    filter_observation_mutations,
    ids,
    sort_mutations,
    with_status,
)

from tests.factories import create_feature, create_observation, move_feature


class TestOrdering:
    """Tests for mutation ordering."""

    def test_sorted_by_client_timestamp(self):
        """Older client timestamps come first."""
        late = replace(create_feature("f1", 300), id=1)
        early = replace(move_feature("f1", 100, 0.0, 0.0), id=2)

        assert sort_mutations([late, early]) == [early, late]

    def test_ties_broken_by_queue_id(self):
        """Equal timestamps fall back to queue order."""
        second = replace(move_feature("f1", 100, 1.0, 1.0), id=7)
        first = replace(move_feature("f1", 100, 2.0, 2.0), id=3)

        assert ids(sort_mutations([second, first])) == [3, 7]

    def test_unsaved_mutations_sort_last_among_ties(self):
        """A mutation without a queue id sorts after saved ones with the same timestamp."""
        saved = replace(create_feature("f1", 100), id=9)
        unsaved = move_feature("f1", 100, 1.0, 1.0)

        assert sort_mutations([unsaved, saved]) == [saved, unsaved]
        assert ids([unsaved, saved]) == [9]


class TestVariants:
    """Tests for the mutation union."""

    def test_entity_id(self):
        """entity_id names the feature or observation the mutation targets."""
        assert create_feature("f1", 1).entity_id == "f1"
        assert create_observation("o1", "f1", 1).entity_id == "o1"

    def test_filters(self):
        feature = create_feature("f1", 1)
        observation = create_observation("o1", "f1", 2, name="a")

        assert filter_feature_mutations([feature, observation]) == [feature]
        assert filter_observation_mutations([feature, observation]) == [observation]


class TestWithStatus:
    """Tests for delivery metadata copies."""

    def test_bump_retry(self):
        """with_status records the error and counts the retry."""
        mutation = replace(create_feature("f1", 1), id=1)

        failed = with_status(mutation, SyncStatus.FAILED, "timeout", bump_retry=True)

        assert failed.sync_status == SyncStatus.FAILED
        assert failed.retry_count == 1
        assert failed.last_error == "timeout"
        assert mutation.retry_count == 0

    def test_payload_untouched(self):
        mutation = replace(create_observation("o1", "f1", 5, name="a"), id=4)

        pending = with_status(mutation, SyncStatus.PENDING)

        assert pending.response_deltas == mutation.response_deltas
        assert pending.client_timestamp == 5
        assert pending.id == 4
