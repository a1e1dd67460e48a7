"""
Unit tests for the in-memory remote data store.

Tests cover:
- Idempotent CREATE and DELETE
- Failure classification and scripted failures
- Change streams
"""

import asyncio

import pytest

from ground.groundsync.errors import RemoteRejection, TransientNetworkFailure
from ground.groundsync.remote import InMemoryRemoteDataStore, RemoteChangeType, RemoteDataStore

from tests.factories import (
    PROJECT_ID,
    create_feature,
    create_observation,
    delete_feature,
    make_project,
    move_feature,
    remote_feature,
    update_observation,
)


@pytest.fixture
def remote():
    store = InMemoryRemoteDataStore()
    store.put_project(make_project())
    return store


class TestInMemoryRemoteDataStore:
    """Tests for InMemoryRemoteDataStore."""

    def test_implements_protocol(self, remote):
        assert isinstance(remote, RemoteDataStore)

    @pytest.mark.asyncio
    async def test_load_project(self, remote):
        project = await remote.load_project(PROJECT_ID)

        assert project == make_project()
        assert await remote.load_project("missing") is None

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, remote, user):
        """Re-sending a CREATE keeps the original creation audit."""
        await remote.apply_mutation(create_feature("f1", 100), user)
        first = remote.get_feature_document(PROJECT_ID, "f1")

        await remote.apply_mutation(create_feature("f1", 100), user)

        again = remote.get_feature_document(PROJECT_ID, "f1")
        assert again.created == first.created
        assert len(await remote.load_features(PROJECT_ID)) == 1

    @pytest.mark.asyncio
    async def test_update_moves_feature(self, remote, user):
        await remote.apply_mutation(create_feature("f1", 100), user)
        await remote.apply_mutation(move_feature("f1", 200, 5.0, 6.0), user)

        [feature] = await remote.load_features(PROJECT_ID)
        assert (feature.location.latitude, feature.location.longitude) == (5.0, 6.0)
        assert feature.last_modified.client_timestamp == 200
        assert feature.last_modified.server_timestamp is not None

    @pytest.mark.asyncio
    async def test_update_missing_is_rejected(self, remote, user):
        with pytest.raises(RemoteRejection) as exc_info:
            await remote.apply_mutation(move_feature("ghost", 100, 0.0, 0.0), user)

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, remote, user):
        """Deleting twice succeeds and drops the feature's observations."""
        await remote.apply_mutation(create_feature("f1", 100), user)
        await remote.apply_mutation(create_observation("o1", "f1", 110, name="a"), user)

        await remote.apply_mutation(delete_feature("f1", 200), user)
        await remote.apply_mutation(delete_feature("f1", 200), user)

        assert await remote.load_features(PROJECT_ID) == []
        assert remote.get_observation_document(PROJECT_ID, "o1") is None

    @pytest.mark.asyncio
    async def test_observation_requires_feature(self, remote, user):
        with pytest.raises(RemoteRejection) as exc_info:
            await remote.apply_mutation(create_observation("o1", "ghost", 100, name="a"), user)

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_observation_updates_merge_fields(self, remote, user):
        await remote.apply_mutation(create_feature("f1", 100), user)
        await remote.apply_mutation(create_observation("o1", "f1", 110, name="a", count=1), user)
        await remote.apply_mutation(
            update_observation("o1", "f1", 120, count=2, kind=("opt_oak",)), user
        )

        [observation] = await remote.load_observations(PROJECT_ID, "f1")
        assert dict(observation.responses) == {"name": "a", "count": 2, "kind": ("opt_oak",)}

    @pytest.mark.asyncio
    async def test_offline_raises_transient(self, remote, user):
        remote.set_online(False)

        with pytest.raises(TransientNetworkFailure):
            await remote.apply_mutation(create_feature("f1", 100), user)

        remote.set_online(True)
        await remote.apply_mutation(create_feature("f1", 100), user)
        assert len(remote.applied) == 1

    @pytest.mark.asyncio
    async def test_injected_failures(self, remote, user):
        """Injected failures are raised the requested number of times."""
        remote.inject_failure(TransientNetworkFailure("timeout"), times=2)

        for _ in range(2):
            with pytest.raises(TransientNetworkFailure):
                await remote.load_features(PROJECT_ID)

        assert await remote.load_features(PROJECT_ID) == []

    @pytest.mark.asyncio
    async def test_rejected_entity(self, remote, user):
        remote.reject_entity("f1", "Permission denied")

        with pytest.raises(RemoteRejection) as exc_info:
            await remote.apply_mutation(create_feature("f1", 100), user)

        assert exc_info.value.entity_id == "f1"
        assert exc_info.value.status_code == 403

        remote.clear_rejections()
        await remote.apply_mutation(create_feature("f1", 100), user)

    @pytest.mark.asyncio
    async def test_change_stream(self, remote, user):
        """The stream yields current features, then later changes."""
        remote.put_feature(remote_feature("f1", user, 100))
        stream = remote.feature_changes_once_and_stream(PROJECT_ID)
        try:
            initial = await asyncio.wait_for(stream.__anext__(), timeout=5)
            assert (initial.type, initial.feature_id) == (RemoteChangeType.ADDED, "f1")

            remote.put_feature(remote_feature("f1", user, 200, lat=1.0))
            modified = await asyncio.wait_for(stream.__anext__(), timeout=5)
            assert modified.type == RemoteChangeType.MODIFIED
            assert modified.feature.location.latitude == 1.0

            remote.remove_feature(PROJECT_ID, "f1")
            removed = await asyncio.wait_for(stream.__anext__(), timeout=5)
            assert (removed.type, removed.feature) == (RemoteChangeType.REMOVED, None)
        finally:
            await stream.aclose()
