"""
Unit tests for replaying pending mutations on snapshots.

Tests cover:
- Response delta application
- Field-by-field observation merge
- Feature location and delete merge
- Helpers used for out-of-order application
"""

from dataclasses import replace

import pytest

from ground.groundsync.local import (
    apply_feature_mutations,
    apply_observation_mutations,
    apply_response_deltas,
)
from ground.groundsync.local.merge import fields_touched_after, is_superseded, location_set_after
from ground.groundsync.model import EntityState, Point, ResponseDelta, User

from tests.factories import (
    delete_feature,
    delete_observation,
    move_feature,
    remote_feature,
    remote_observation,
    update_observation,
)


@pytest.fixture
def author():
    return User(id="user_1", email="alice@example.org", display_name="Alice")


@pytest.fixture
def other():
    return User(id="user_2", email="bob@example.org", display_name="Bob")


class TestResponseDeltas:
    """Tests for apply_response_deltas."""

    def test_set_and_clear(self):
        """Deltas set values; None clears a field."""
        responses = {"name": "oak", "count": 1}

        merged = apply_response_deltas(
            responses,
            [ResponseDelta("count", 4), ResponseDelta("name", None), ResponseDelta("kind", ("a",))],
        )

        assert merged == {"count": 4, "kind": ("a",)}
        assert responses == {"name": "oak", "count": 1}

    def test_later_delta_wins(self):
        merged = apply_response_deltas({}, [ResponseDelta("x", 1), ResponseDelta("x", 2)])

        assert merged == {"x": 2}


class TestObservationMerge:
    """Tests for apply_observation_mutations."""

    def test_no_pending_returns_snapshot(self, other, author):
        snapshot = remote_observation("o1", "f1", other, 100, name="remote")

        assert apply_observation_mutations(snapshot, [], author) is snapshot

    def test_fields_merge_independently(self, other, author):
        """Pending fields win, untouched fields keep the remote value."""
        snapshot = remote_observation("o1", "f1", other, 500, name="remote", count=1)
        pending = [
            replace(update_observation("o1", "f1", 200, count=2), id=1),
            replace(update_observation("o1", "f1", 300, count=3), id=2),
        ]

        merged = apply_observation_mutations(snapshot, pending, author)

        assert dict(merged.responses) == {"name": "remote", "count": 3}
        assert merged.last_modified.user == author
        assert merged.last_modified.client_timestamp == 300
        assert merged.created == snapshot.created

    def test_replay_order_ignores_input_order(self, other, author):
        snapshot = remote_observation("o1", "f1", other, 100)
        newest = replace(update_observation("o1", "f1", 300, name="newest"), id=1)
        oldest = replace(update_observation("o1", "f1", 200, name="oldest"), id=2)

        merged = apply_observation_mutations(snapshot, [newest, oldest], author)

        assert merged.responses["name"] == "newest"

    def test_pending_delete(self, other, author):
        snapshot = remote_observation("o1", "f1", other, 100, name="a")
        pending = [replace(delete_observation("o1", "f1", 200), id=1)]

        merged = apply_observation_mutations(snapshot, pending, author)

        assert merged.state == EntityState.DELETED
        assert merged.is_deleted


class TestFeatureMerge:
    """Tests for apply_feature_mutations."""

    def test_last_location_wins(self, other, author):
        snapshot = remote_feature("f1", other, 100, lat=1.0, lng=1.0)
        pending = [
            replace(move_feature("f1", 300, 3.0, 3.0), id=2),
            replace(move_feature("f1", 200, 2.0, 2.0), id=1),
        ]

        merged = apply_feature_mutations(snapshot, pending, author)

        assert merged.location == Point(3.0, 3.0)
        assert merged.last_modified.client_timestamp == 300

    def test_pending_delete(self, other, author):
        snapshot = remote_feature("f1", other, 100)

        merged = apply_feature_mutations(
            snapshot, [replace(delete_feature("f1", 200), id=1)], author
        )

        assert merged.is_deleted
        assert merged.location == snapshot.location


class TestOutOfOrderHelpers:
    """Tests for the helpers guarding out-of-order local application."""

    def test_fields_touched_after(self):
        later = replace(update_observation("o1", "f1", 300, name="x", count=1), id=1)
        other_obs = replace(update_observation("o2", "f1", 400, kind=("a",)), id=2)
        earlier = update_observation("o1", "f1", 200, name="y")

        assert fields_touched_after(earlier, [later, other_obs]) == {"name", "count"}
        assert fields_touched_after(later, [later, other_obs]) == set()

    def test_location_set_after(self):
        later = replace(move_feature("f1", 300, 1.0, 1.0), id=1)

        assert location_set_after(move_feature("f1", 200, 0.0, 0.0), [later])
        assert not location_set_after(move_feature("f1", 400, 0.0, 0.0), [later])

    def test_is_superseded(self):
        later = replace(move_feature("f1", 300, 1.0, 1.0), id=1)

        assert is_superseded(delete_feature("f1", 200), [later])
        assert not is_superseded(delete_feature("f2", 200), [later])
