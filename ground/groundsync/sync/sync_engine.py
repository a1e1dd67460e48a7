"""
Remote sync engine: pushes queued local mutations and pulls remote changes.

Push path:
    SyncEngine.apply() writes the mutation locally (apply + enqueue) and
    schedules the unique drain work. LocalMutationSyncWorker drains the
    whole queue in order, one mutation at a time, and finalizes each one
    after the remote store confirms it.

Pull path:
    pull_project() and apply_remote_change() merge remote snapshots into
    the local store, replaying any pending local mutations on top.

Invariants:
    - A mutation is finalized only after the remote store accepted it
    - Mutations are pushed oldest first; a transient failure stops the drain
    - A rejected mutation blocks later mutations of the same entity (and
      observations of a rejected feature) until the user retries it
    - A feature DELETE waits while any observation of that feature is blocked
    - Only one drain runs at a time (unique work, APPEND policy)

How to change safely:
    - Never finalize before the push returns
    - Test crash-between-push-and-finalize with the idempotent remote
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Iterable, List, Optional, Set

from ..errors import ConstraintViolation, NotFoundError, RemoteRejection, TransientNetworkFailure
from ..local.local_store import LocalStore
from ..model.entities import Feature, Project
from ..model.mutation import (
    FeatureMutation,
    Mutation,
    MutationType,
    ObservationMutation,
    SyncStatus,
    with_status,
)
from ..remote.base import RemoteChange, RemoteChangeType, RemoteDataStore
from .scheduler import ExistingWorkPolicy, WorkContext, WorkResult, WorkScheduler

logger = logging.getLogger(__name__)

SYNC_WORK_NAME = "local-mutation-sync"


class LocalMutationSyncWorker:
    """Drains the pending mutation queue to the remote store.

    Example:
        >>> worker = LocalMutationSyncWorker(store, remote)
        >>> result = await worker.do_work(WorkContext("sync", 1, 10))
    """

    def __init__(self, local_store: LocalStore, remote_store: RemoteDataStore) -> None:
        self.local_store = local_store
        self.remote_store = remote_store

    async def do_work(self, ctx: WorkContext) -> WorkResult:
        """Push every deliverable pending mutation, oldest first.

        Args:
            ctx: Attempt information from the scheduler

        Returns:
            SUCCESS when everything deliverable was delivered, RETRY after a
            transient failure, FAILURE if any mutation was rejected this run
        """
        mutations = await self.local_store.get_all_pending_mutations()
        if not mutations:
            return WorkResult.SUCCESS

        logger.info(
            "Syncing local mutations",
            extra={"pending": len(mutations), "attempt": ctx.attempt},
        )

        blocked = _Blocklist()
        rejected = 0
        pushed = 0

        for mutation in mutations:
            if blocked.blocks(mutation):
                continue

            if mutation.sync_status == SyncStatus.REJECTED:
                blocked.add(mutation)
                continue

            try:
                await self._push(mutation)
            except TransientNetworkFailure as e:
                await self.local_store.update_mutations(
                    [with_status(mutation, SyncStatus.FAILED, e.message, bump_retry=True)]
                )
                logger.warning(
                    "Mutation push failed, will retry",
                    extra={
                        "mutation_id": mutation.id,
                        "entity_id": mutation.entity_id,
                        "error": e.message,
                    },
                )
                return WorkResult.RETRY
            except RemoteRejection as e:
                await self.local_store.update_mutations(
                    [with_status(mutation, SyncStatus.REJECTED, e.message, bump_retry=True)]
                )
                blocked.add(mutation)
                rejected += 1
                logger.warning(
                    "Mutation rejected by remote store",
                    extra={
                        "mutation_id": mutation.id,
                        "entity_id": mutation.entity_id,
                        "error": e.message,
                    },
                )
                continue

            await self.local_store.finalize_pending_mutations([mutation])
            pushed += 1

        logger.info("Sync finished", extra={"pushed": pushed, "rejected": rejected})
        return WorkResult.FAILURE if rejected else WorkResult.SUCCESS

    async def _push(self, mutation: Mutation) -> None:
        await self.local_store.update_mutations(
            [with_status(mutation, SyncStatus.IN_PROGRESS, mutation.last_error)]
        )
        user = await self.local_store.get_user(mutation.user_id)
        if user is None:
            raise RemoteRejection(
                f"Unknown author {mutation.user_id}", entity_id=mutation.entity_id
            )
        await self.remote_store.apply_mutation(mutation, user)


class _Blocklist:
    """Entities whose later mutations must wait behind a rejected one."""

    def __init__(self) -> None:
        self.features: Set[str] = set()
        self.observations: Set[str] = set()
        self.features_with_blocked_observations: Set[str] = set()

    def blocks(self, mutation: Mutation) -> bool:
        if mutation.feature_id in self.features:
            return True
        if isinstance(mutation, ObservationMutation):
            return mutation.observation_id in self.observations
        # A feature DELETE waits for its rejected observations.
        return (
            mutation.type == MutationType.DELETE
            and mutation.feature_id in self.features_with_blocked_observations
        )

    def add(self, mutation: Mutation) -> None:
        if isinstance(mutation, FeatureMutation):
            self.features.add(mutation.feature_id)
        else:
            self.observations.add(mutation.observation_id)
            self.features_with_blocked_observations.add(mutation.feature_id)


class SyncEngine:
    """Coordinates local writes, background push and remote pull.

    Example:
        >>> engine = SyncEngine(store, remote, scheduler)
        >>> await engine.apply(mutation)
        >>> await engine.pull_project("project_1")
    """

    def __init__(
        self,
        local_store: LocalStore,
        remote_store: RemoteDataStore,
        scheduler: WorkScheduler,
    ) -> None:
        self.local_store = local_store
        self.remote_store = remote_store
        self.scheduler = scheduler
        self.worker = LocalMutationSyncWorker(local_store, remote_store)

    async def apply(self, mutation: Mutation) -> Mutation:
        """Apply a user edit locally and schedule its delivery.

        Returns:
            The enqueued mutation

        Raises:
            InvalidMutationType, ConstraintViolation, StoreError: From the local store
        """
        enqueued = await self.local_store.apply_and_enqueue(mutation)
        self.schedule_sync()
        return enqueued

    def schedule_sync(self) -> None:
        self.scheduler.enqueue_unique_work(
            SYNC_WORK_NAME, self.worker.do_work, ExistingWorkPolicy.APPEND
        )

    async def resume(self) -> bool:
        """Schedule the drain if the queue holds deliverable mutations.

        Called on process start so work queued before a restart is delivered.
        """
        pending = await self.local_store.get_all_pending_mutations()
        if any(m.sync_status != SyncStatus.REJECTED for m in pending):
            logger.info("Resuming sync", extra={"pending": len(pending)})
            self.schedule_sync()
            return True
        return False

    async def retry_rejected(self, mutation_ids: Optional[Iterable[int]] = None) -> int:
        """Reset rejected mutations to PENDING and schedule the drain.

        Args:
            mutation_ids: Queue ids to retry; all rejected mutations if None

        Returns:
            Number of mutations reset
        """
        wanted = set(mutation_ids) if mutation_ids is not None else None
        rejected = [
            m
            for m in await self.local_store.get_rejected_mutations()
            if wanted is None or m.id in wanted
        ]
        if not rejected:
            return 0
        await self.local_store.update_mutations(
            [with_status(m, SyncStatus.PENDING) for m in rejected]
        )
        self.schedule_sync()
        return len(rejected)

    def sync_errors_once_and_stream(self) -> AsyncIterator[List[Mutation]]:
        """Rejected mutations now, then after every queue change."""
        return self.local_store.rejected_mutations_once_and_stream()

    async def pull_project(self, project_id: str) -> Project:
        """Fetch a project with its features and observations and merge them locally.

        Raises:
            NotFoundError: If the remote store has no such project
            TransientNetworkFailure: If the remote store is unreachable
        """
        project = await self.remote_store.load_project(project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        await self.local_store.insert_or_update_project(project)

        features = await self.remote_store.load_features(project_id)
        for feature in features:
            await self._merge_feature_with_observations(project_id, feature.id, feature)

        logger.info(
            "Pulled project",
            extra={"project_id": project_id, "features": len(features)},
        )
        return project

    async def _merge_feature_with_observations(
        self, project_id: str, feature_id: str, feature: Feature
    ) -> None:
        try:
            await self.local_store.merge_feature(feature)
            for observation in await self.remote_store.load_observations(project_id, feature_id):
                await self.local_store.merge_observation(observation)
        except ConstraintViolation as e:
            logger.warning(
                "Skipping remote entity that does not fit the local project",
                extra={"feature_id": feature_id, "error": e.message},
            )

    async def apply_remote_change(self, change: RemoteChange) -> None:
        """Merge one remote change into the local store.

        REMOVED deletes the local copy unless local edits to it are still pending.
        """
        if change.type == RemoteChangeType.REMOVED:
            pending = await self.local_store.get_pending_mutations(change.feature_id)
            if pending:
                logger.info(
                    "Keeping remotely removed feature with pending edits",
                    extra={"feature_id": change.feature_id, "pending": len(pending)},
                )
                return
            await self.local_store.delete_feature(change.feature_id)
            return

        if change.feature is None:
            raise ValueError(f"{change.type.value} change without a feature: {change.feature_id}")

        if change.type == RemoteChangeType.ADDED:
            await self._merge_feature_with_observations(
                change.feature.project_id, change.feature_id, change.feature
            )
        else:
            try:
                await self.local_store.merge_feature(change.feature)
            except ConstraintViolation as e:
                logger.warning(
                    "Skipping remote feature that does not fit the local project",
                    extra={"feature_id": change.feature_id, "error": e.message},
                )

    async def stream_remote_changes(self, project_id: str) -> None:
        """Follow the remote change stream until cancelled."""
        logger.info("Following remote changes", extra={"project_id": project_id})
        async for change in self.remote_store.feature_changes_once_and_stream(project_id):
            await self.apply_remote_change(change)
