"""
Unit tests for the local SQLite store.

Tests cover:
- Initialization and project round trips
- Optimistic apply + enqueue and its atomicity
- Queue reads, retry bookkeeping and finalization
- Merge of remote snapshots with pending mutations
- Tile source and offline area bookkeeping
- Streaming reads
"""

import asyncio
import sqlite3

import pytest

from ground.groundsync.errors import (
    ConstraintViolation,
    InvalidMutationType,
    InvalidStateTransition,
    NotFoundError,
    StoreError,
    StoreNotInitializedError,
)
from ground.groundsync.local import LocalStore
from ground.groundsync.model import (
    EntityState,
    FeatureMutation,
    LatLngBounds,
    MutationType,
    OfflineArea,
    OfflineAreaState,
    Point,
    SyncStatus,
    TileSource,
    TileSourceState,
)
from ground.groundsync.model.mutation import with_status

from tests.factories import (
    FORM_ID,
    LAYER_ID,
    PROJECT_ID,
    create_feature,
    create_observation,
    delete_feature,
    move_feature,
    remote_feature,
    remote_observation,
    update_observation,
)


def tile(tile_id, south, west, north, east, state=TileSourceState.PENDING):
    return TileSource(
        id=tile_id,
        url=f"https://tiles.example.org/{tile_id}.mbtiles",
        path=f"{tile_id}.mbtiles",
        bounds=LatLngBounds.of(south, west, north, east),
        state=state,
    )


class TestInitialization:
    """Tests for database lifecycle."""

    @pytest.mark.asyncio
    async def test_initialize_creates_database(self, data_dir):
        """initialize creates the database file."""
        store = LocalStore(data_dir, wal_mode=False)
        assert not await store.exists()

        await store.initialize()

        assert await store.exists()
        assert store.get_db_path().name == "ground.db"

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, store, project):
        """Re-initializing keeps existing data."""
        await store.initialize()

        assert await store.get_project(project.id) == project

    @pytest.mark.asyncio
    async def test_uninitialized_store_raises(self, data_dir):
        """Operations before initialize fail with a typed error."""
        store = LocalStore(data_dir, wal_mode=False)

        with pytest.raises(StoreNotInitializedError):
            await store.get_user("user_1")


class TestProjects:
    """Tests for project storage."""

    @pytest.mark.asyncio
    async def test_project_round_trip(self, store, project):
        """Projects come back with layers, forms, fields and sources."""
        fetched = await store.get_project(project.id)

        assert fetched == project
        layer = fetched.get_layer(LAYER_ID)
        assert layer.form.id == FORM_ID
        assert [f.id for f in layer.form.fields] == ["name", "count", "kind"]
        assert len(layer.form.get_field("kind").options) == 2

    @pytest.mark.asyncio
    async def test_missing_project_is_none(self, store):
        """Unknown projects return None."""
        assert await store.get_project("nope") is None

    @pytest.mark.asyncio
    async def test_delete_project_cascades(self, store):
        """Deleting a project removes its features."""
        await store.apply_and_enqueue(create_feature("f1", 100))

        assert await store.delete_project(PROJECT_ID) is True

        assert await store.get_project(PROJECT_ID) is None
        assert await store.get_feature("f1") is None
        # The queue outlives the entity
        assert await store.count_pending_mutations() == 1


class TestApplyAndEnqueue:
    """Tests for optimistic apply + enqueue."""

    @pytest.mark.asyncio
    async def test_create_feature(self, store, user):
        """CREATE inserts the feature and queues the mutation."""
        enqueued = await store.apply_and_enqueue(create_feature("f1", 100, lat=1.5, lng=2.5))

        assert enqueued.id is not None
        assert enqueued.sync_status == SyncStatus.PENDING

        feature = await store.get_feature("f1")
        assert feature.location == Point(1.5, 2.5)
        assert feature.created.user == user
        assert feature.last_modified.client_timestamp == 100

        pending = await store.get_pending_mutations("f1")
        assert [m.id for m in pending] == [enqueued.id]
        assert pending[0] == enqueued

    @pytest.mark.asyncio
    async def test_create_existing_feature_raises(self, store):
        """CREATE on an existing id is rejected and nothing is queued."""
        await store.apply_and_enqueue(create_feature("f1", 100))

        with pytest.raises(InvalidMutationType):
            await store.apply_and_enqueue(create_feature("f1", 200))

        assert await store.count_pending_mutations() == 1

    @pytest.mark.asyncio
    async def test_update_missing_feature_raises(self, store):
        """UPDATE on an absent feature is rejected."""
        with pytest.raises(InvalidMutationType):
            await store.apply_and_enqueue(move_feature("ghost", 100, 1.0, 1.0))

        assert await store.count_pending_mutations() == 0

    @pytest.mark.asyncio
    async def test_update_deleted_feature_raises(self, store):
        """UPDATE after a local DELETE is rejected."""
        await store.apply_and_enqueue(create_feature("f1", 100))
        await store.apply_and_enqueue(delete_feature("f1", 200))

        with pytest.raises(InvalidMutationType):
            await store.apply_and_enqueue(move_feature("f1", 300, 1.0, 1.0))

    @pytest.mark.asyncio
    async def test_unknown_author_raises(self, store):
        """Mutations by unknown users violate constraints."""
        with pytest.raises(ConstraintViolation):
            await store.apply_and_enqueue(create_feature("f1", 100, user_id="stranger"))

        assert await store.get_feature("f1") is None

    @pytest.mark.asyncio
    async def test_unknown_layer_raises(self, store):
        """Features must reference a layer of their project."""
        mutation = FeatureMutation(
            type=MutationType.CREATE,
            project_id=PROJECT_ID,
            feature_id="f1",
            layer_id="no_such_layer",
            user_id="user_1",
            client_timestamp=100,
            new_location=Point(0.0, 0.0),
        )

        with pytest.raises(ConstraintViolation):
            await store.apply_and_enqueue(mutation)

    @pytest.mark.asyncio
    async def test_observation_requires_feature(self, store):
        """Observations must reference an existing feature."""
        with pytest.raises(ConstraintViolation):
            await store.apply_and_enqueue(create_observation("o1", "ghost", 100, name="x"))

    @pytest.mark.asyncio
    async def test_apply_is_atomic(self, store, monkeypatch):
        """A failing enqueue leaves neither entity nor queue entry behind."""

        def broken_enqueue(conn, mutation):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_enqueue", broken_enqueue)

        with pytest.raises(StoreError):
            await store.apply_and_enqueue(create_feature("f1", 100))

        assert await store.get_feature("f1") is None
        assert await store.count_pending_mutations() == 0

    @pytest.mark.asyncio
    async def test_delete_is_soft_until_finalized(self, store):
        """DELETE hides the feature; finalizing removes it physically."""
        await store.apply_and_enqueue(create_feature("f1", 100))
        deletion = await store.apply_and_enqueue(delete_feature("f1", 200))

        assert await store.get_features(PROJECT_ID) == []
        assert (await store.get_feature("f1")).state == EntityState.DELETED

        pending = await store.get_pending_mutations("f1")
        assert await store.finalize_pending_mutations(pending) == 2
        assert await store.get_feature("f1") is None
        assert deletion.id in [m.id for m in pending]

    @pytest.mark.asyncio
    async def test_observation_responses(self, store):
        """Observation CREATE and UPDATE apply response deltas."""
        await store.apply_and_enqueue(create_feature("f1", 100))
        await store.apply_and_enqueue(
            create_observation("o1", "f1", 110, name="oak", kind=("opt_oak",))
        )
        await store.apply_and_enqueue(update_observation("o1", "f1", 120, count=3, name=None))

        observation = await store.get_observation("o1")
        assert dict(observation.responses) == {"kind": ("opt_oak",), "count": 3}
        assert observation.last_modified.client_timestamp == 120

    @pytest.mark.asyncio
    async def test_out_of_order_update_keeps_later_fields(self, store):
        """An older mutation does not overwrite fields a newer one wrote."""
        await store.apply_and_enqueue(create_feature("f1", 100))
        await store.apply_and_enqueue(create_observation("o1", "f1", 110, name="first"))
        await store.apply_and_enqueue(update_observation("o1", "f1", 300, name="newest"))
        await store.apply_and_enqueue(update_observation("o1", "f1", 200, name="older", count=5))

        observation = await store.get_observation("o1")
        assert observation.responses["name"] == "newest"
        assert observation.responses["count"] == 5
        assert observation.last_modified.client_timestamp == 300

    @pytest.mark.asyncio
    async def test_features_sorted_by_last_modified(self, store):
        """Visible features come back most recently modified first."""
        await store.apply_and_enqueue(create_feature("old", 100))
        await store.apply_and_enqueue(create_feature("new", 300))
        await store.apply_and_enqueue(create_feature("mid", 200))

        assert [f.id for f in await store.get_features(PROJECT_ID)] == ["new", "mid", "old"]


class TestMutationQueue:
    """Tests for queue reads, bookkeeping and finalization."""

    @pytest.mark.asyncio
    async def test_pending_mutations_include_observations(self, store):
        """A feature's pending mutations include its observations', oldest first."""
        create = await store.apply_and_enqueue(create_feature("f1", 100))
        observe = await store.apply_and_enqueue(create_observation("o1", "f1", 150, name="a"))
        move = await store.apply_and_enqueue(move_feature("f1", 120, 5.0, 5.0))

        pending = await store.get_pending_mutations("f1")

        assert [m.id for m in pending] == [create.id, move.id, observe.id]
        assert [m.id for m in await store.get_pending_mutations("o1")] == [observe.id]

    @pytest.mark.asyncio
    async def test_update_mutations_only_touches_metadata(self, store):
        """Retry bookkeeping never changes mutation content."""
        enqueued = await store.apply_and_enqueue(create_feature("f1", 100, lat=1.0, lng=1.0))

        await store.update_mutations(
            [with_status(enqueued, SyncStatus.FAILED, "timeout", bump_retry=True)]
        )

        [stored] = await store.get_pending_mutations("f1")
        assert stored.sync_status == SyncStatus.FAILED
        assert stored.retry_count == 1
        assert stored.last_error == "timeout"
        assert stored.new_location == Point(1.0, 1.0)
        assert stored.client_timestamp == 100

    @pytest.mark.asyncio
    async def test_update_unsaved_mutation_raises(self, store):
        """Mutations without a queue id cannot be updated."""
        with pytest.raises(ValueError):
            await store.update_mutations([create_feature("f1", 100)])

    @pytest.mark.asyncio
    async def test_rejected_mutations(self, store):
        """Only REJECTED mutations are reported as sync errors."""
        first = await store.apply_and_enqueue(create_feature("f1", 100))
        await store.apply_and_enqueue(create_feature("f2", 200))

        await store.update_mutations([with_status(first, SyncStatus.REJECTED, "denied")])

        rejected = await store.get_rejected_mutations()
        assert [m.id for m in rejected] == [first.id]
        assert rejected[0].last_error == "denied"

    @pytest.mark.asyncio
    async def test_finalize_is_idempotent(self, store):
        """Finalizing twice removes the entry once."""
        enqueued = await store.apply_and_enqueue(create_feature("f1", 100))

        assert await store.finalize_pending_mutations([enqueued]) == 1
        assert await store.finalize_pending_mutations([enqueued]) == 0

        assert await store.count_pending_mutations() == 0
        assert await store.get_feature("f1") is not None


class TestMerge:
    """Tests for merging remote snapshots."""

    @pytest.mark.asyncio
    async def test_merge_without_pending_adopts_remote(self, store, user):
        """With nothing pending the remote snapshot is stored as is."""
        remote = remote_feature("f1", user, 500, lat=3.0, lng=4.0, server_ts=600)

        merged = await store.merge_feature(remote)

        assert merged == remote
        assert await store.get_feature("f1") == remote

    @pytest.mark.asyncio
    async def test_merge_replays_pending_location(self, store, user):
        """A pending move wins over the remote location."""
        create = await store.apply_and_enqueue(create_feature("f1", 100, lat=1.0, lng=1.0))
        await store.finalize_pending_mutations([create])
        await store.apply_and_enqueue(move_feature("f1", 200, 7.0, 7.0))

        merged = await store.merge_feature(remote_feature("f1", user, 150, lat=2.0, lng=2.0))

        assert merged.location == Point(7.0, 7.0)
        assert merged.last_modified.client_timestamp == 200

    @pytest.mark.asyncio
    async def test_merge_observation_field_by_field(self, store, user):
        """Pending fields win; untouched fields take the remote value."""
        await store.apply_and_enqueue(create_feature("f1", 100))
        await store.apply_and_enqueue(create_observation("o1", "f1", 110, name="a"))
        await store.finalize_pending_mutations(await store.get_all_pending_mutations())
        await store.apply_and_enqueue(update_observation("o1", "f1", 200, count=3))

        merged = await store.merge_observation(
            remote_observation("o1", "f1", user, 150, name="remote", count=1)
        )

        assert dict(merged.responses) == {"name": "remote", "count": 3}
        assert (await store.get_observation("o1")).responses["count"] == 3

    @pytest.mark.asyncio
    async def test_merge_keeps_pending_delete(self, store, user):
        """A pending DELETE keeps the merged feature hidden."""
        create = await store.apply_and_enqueue(create_feature("f1", 100))
        await store.finalize_pending_mutations([create])
        await store.apply_and_enqueue(delete_feature("f1", 200))

        merged = await store.merge_feature(remote_feature("f1", user, 150))

        assert merged.is_deleted
        assert await store.get_features(PROJECT_ID) == []


class TestTileSources:
    """Tests for tile source and offline area bookkeeping."""

    @pytest.mark.asyncio
    async def test_tile_state_transitions(self, store):
        """Tiles move forward only, except FAILED back to PENDING."""
        await store.insert_or_update_tile_source(tile("t1", 0, 0, 1, 1))

        with pytest.raises(InvalidStateTransition):
            await store.update_tile_source_state("t1", TileSourceState.DOWNLOADED)

        await store.update_tile_source_state("t1", TileSourceState.IN_PROGRESS)
        failed = await store.update_tile_source_state("t1", TileSourceState.FAILED, error="boom")
        assert failed.last_error == "boom"

        retried = await store.update_tile_source_state("t1", TileSourceState.PENDING)
        assert retried.state == TileSourceState.PENDING
        assert retried.last_error == ""

    @pytest.mark.asyncio
    async def test_update_missing_tile_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.update_tile_source_state("ghost", TileSourceState.IN_PROGRESS)

    @pytest.mark.asyncio
    async def test_pending_tiles_include_in_progress(self, store):
        """Tiles left IN_PROGRESS by an interrupted worker are still pending."""
        await store.insert_or_update_tile_source(tile("t1", 0, 0, 1, 1))
        await store.insert_or_update_tile_source(
            tile("t2", 0, 1, 1, 2, state=TileSourceState.IN_PROGRESS)
        )
        await store.insert_or_update_tile_source(
            tile("t3", 0, 2, 1, 3, state=TileSourceState.DOWNLOADED)
        )

        pending = await store.get_pending_tile_sources()

        assert [t.id for t in pending] == ["t1", "t2"]

    @pytest.mark.asyncio
    async def test_enqueue_area_download_resets_failed_tiles(self, store):
        """Known FAILED tiles go back to PENDING; DOWNLOADED ones are kept."""
        await store.insert_or_update_tile_source(
            tile("t1", 0, 0, 1, 1, state=TileSourceState.FAILED)
        )
        await store.insert_or_update_tile_source(
            tile("t2", 0, 1, 1, 2, state=TileSourceState.DOWNLOADED)
        )
        area = OfflineArea(id="a1", bounds=LatLngBounds.of(0, 0, 1, 2), name="Area")

        stored = await store.enqueue_area_download(
            area, [tile("t1", 0, 0, 1, 1), tile("t2", 0, 1, 1, 2), tile("t3", 0, 1.5, 1, 2)]
        )

        assert stored.state == OfflineAreaState.IN_PROGRESS
        states = {t.id: t.state for t in await store.get_tile_sources()}
        assert states == {
            "t1": TileSourceState.PENDING,
            "t2": TileSourceState.DOWNLOADED,
            "t3": TileSourceState.PENDING,
        }

    @pytest.mark.asyncio
    async def test_delete_area_keeps_shared_tiles(self, store):
        """Tiles intersecting a remaining area survive its neighbour's removal."""
        for t in (tile("left", 0, 0, 1, 1), tile("shared", 0, 1, 1, 2), tile("right", 0, 2, 1, 3)):
            await store.insert_or_update_tile_source(t)
        await store.insert_or_update_offline_area(
            OfflineArea(id="a", bounds=LatLngBounds.of(0.2, 0.2, 0.8, 1.5), name="A")
        )
        await store.insert_or_update_offline_area(
            OfflineArea(id="b", bounds=LatLngBounds.of(0.2, 1.5, 0.8, 2.5), name="B")
        )

        released = await store.delete_offline_area_and_release("a")

        assert [t.id for t in released] == ["left"]
        assert [t.id for t in await store.get_tile_sources()] == ["right", "shared"]
        assert [a.id for a in await store.get_offline_areas()] == ["b"]

    @pytest.mark.asyncio
    async def test_delete_missing_area_raises(self, store):
        with pytest.raises(NotFoundError):
            await store.delete_offline_area_and_release("ghost")


class TestStreams:
    """Tests for streaming reads."""

    @pytest.mark.asyncio
    async def test_features_once_and_stream(self, store):
        """The stream emits the current snapshot, then one per change."""
        stream = store.features_once_and_stream(PROJECT_ID)
        try:
            assert await asyncio.wait_for(stream.__anext__(), timeout=5) == []

            await store.apply_and_enqueue(create_feature("f1", 100))

            features = await asyncio.wait_for(stream.__anext__(), timeout=5)
            assert [f.id for f in features] == ["f1"]
        finally:
            await stream.aclose()

        assert store.notifier.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_rejected_mutations_stream(self, store):
        """Sync errors stream updates when a mutation is rejected."""
        enqueued = await store.apply_and_enqueue(create_feature("f1", 100))
        stream = store.rejected_mutations_once_and_stream()
        try:
            assert await asyncio.wait_for(stream.__anext__(), timeout=5) == []

            await store.update_mutations([with_status(enqueued, SyncStatus.REJECTED, "denied")])

            rejected = await asyncio.wait_for(stream.__anext__(), timeout=5)
            assert [m.id for m in rejected] == [enqueued.id]
        finally:
            await stream.aclose()
