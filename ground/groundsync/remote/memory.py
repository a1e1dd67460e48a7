"""
In-memory remote data store for testing.

This module provides a document store that behaves like the production
remote for:
- Unit and integration tests of the sync engine
- Local development without a server

Invariants:
    - All data is lost on process exit
    - Same failure classification as the HTTP backend
    - Same idempotency guarantees as the HTTP backend

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the RemoteDataStore protocol
    - Add helpers to script failure scenarios rather than special-casing tests
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Set, Tuple

from ..errors import RemoteRejection, TransientNetworkFailure
from ..model.entities import Feature, Observation, Project, User, now_ms
from ..model.mutation import FeatureMutation, Mutation, MutationType, ObservationMutation
from .base import RemoteChange, RemoteChangeType
from .schema import (
    AuditDocument,
    FeatureDocument,
    ObservationDocument,
    ProjectDocument,
    feature_from_document,
    feature_to_document,
    observation_from_document,
    observation_to_document,
    point_to_document,
    project_from_document,
    project_to_document,
    user_to_document,
)

logger = logging.getLogger(__name__)


class InMemoryRemoteDataStore:
    """In-memory implementation of RemoteDataStore for testing.

    Documents are stored as validated pydantic models so the same
    serialization rules apply as for the HTTP backend.

    Attributes:
        applied: Every mutation accepted, in delivery order

    Example:
        >>> remote = InMemoryRemoteDataStore()
        >>> remote.put_project(project)
        >>> remote.set_online(False)
        >>> await remote.apply_mutation(mutation, user)  # TransientNetworkFailure
    """

    def __init__(self) -> None:
        self._projects: Dict[str, ProjectDocument] = {}
        self._features: Dict[str, Dict[str, FeatureDocument]] = defaultdict(dict)
        self._observations: Dict[str, Dict[str, ObservationDocument]] = defaultdict(dict)
        self._online = True
        self._failures: Deque[Tuple[Exception, int]] = deque()
        self._rejections: Dict[str, str] = {}
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self.applied: List[Mutation] = []

    async def connect(self) -> None:
        logger.debug("InMemoryRemoteDataStore connected")

    async def close(self) -> None:
        self._subscribers.clear()
        logger.debug("InMemoryRemoteDataStore closed")

    # Failure scripting

    def set_online(self, online: bool) -> None:
        """Simulate loss or recovery of network connectivity."""
        self._online = online

    @property
    def is_online(self) -> bool:
        return self._online

    def inject_failure(self, exception: Exception, times: int = 1) -> None:
        """Make the next ``times`` remote calls raise ``exception``."""
        self._failures.append((exception, times))

    def reject_entity(self, entity_id: str, reason: str = "Permission denied") -> None:
        """Refuse every mutation targeting ``entity_id``."""
        self._rejections[entity_id] = reason

    def clear_rejections(self) -> None:
        self._rejections.clear()

    def _check_available(self) -> None:
        if not self._online:
            raise TransientNetworkFailure("Remote store unreachable")
        if self._failures:
            exception, remaining = self._failures.popleft()
            if remaining > 1:
                self._failures.appendleft((exception, remaining - 1))
            raise exception

    # Seeding and inspection

    def put_project(self, project: Project) -> None:
        self._projects[project.id] = project_to_document(project)

    def put_feature(self, feature: Feature) -> None:
        """Write a feature as another client would, notifying change streams."""
        existed = feature.id in self._features[feature.project_id]
        self._features[feature.project_id][feature.id] = feature_to_document(feature)
        self._emit(
            feature.project_id,
            RemoteChange(
                RemoteChangeType.MODIFIED if existed else RemoteChangeType.ADDED,
                feature.id,
                feature,
            ),
        )

    def put_observation(self, observation: Observation) -> None:
        self._observations[observation.project_id][observation.id] = observation_to_document(
            observation
        )

    def remove_feature(self, project_id: str, feature_id: str) -> None:
        if self._features[project_id].pop(feature_id, None) is not None:
            self._drop_observations_of(project_id, feature_id)
            self._emit(project_id, RemoteChange(RemoteChangeType.REMOVED, feature_id))

    def get_feature_document(self, project_id: str, feature_id: str) -> Optional[FeatureDocument]:
        return self._features[project_id].get(feature_id)

    def get_observation_document(
        self, project_id: str, observation_id: str
    ) -> Optional[ObservationDocument]:
        return self._observations[project_id].get(observation_id)

    def _drop_observations_of(self, project_id: str, feature_id: str) -> None:
        observations = self._observations[project_id]
        for observation_id in [o.id for o in observations.values() if o.feature_id == feature_id]:
            del observations[observation_id]

    def _emit(self, project_id: str, change: RemoteChange) -> None:
        for queue in list(self._subscribers.get(project_id, ())):
            queue.put_nowait(change)

    # RemoteDataStore

    async def load_project(self, project_id: str) -> Optional[Project]:
        self._check_available()
        doc = self._projects.get(project_id)
        return project_from_document(doc) if doc else None

    async def load_features(self, project_id: str) -> List[Feature]:
        self._check_available()
        return [feature_from_document(d) for d in self._features[project_id].values()]

    async def load_observations(self, project_id: str, feature_id: str) -> List[Observation]:
        self._check_available()
        return [
            observation_from_document(d)
            for d in self._observations[project_id].values()
            if d.feature_id == feature_id
        ]

    async def feature_changes_once_and_stream(
        self, project_id: str
    ) -> AsyncIterator[RemoteChange]:
        """Stream feature changes.

        Args:
            project_id: Project to follow

        Yields:
            ADDED for each current feature, then every later change
        """
        self._check_available()
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[project_id].add(queue)
        try:
            for doc in list(self._features[project_id].values()):
                yield RemoteChange(RemoteChangeType.ADDED, doc.id, feature_from_document(doc))
            while True:
                yield await queue.get()
        finally:
            self._subscribers[project_id].discard(queue)

    async def apply_mutation(self, mutation: Mutation, user: User) -> None:
        """Apply a mutation to the stored documents.

        Raises:
            TransientNetworkFailure: When offline or a failure was injected
            RemoteRejection: When the entity is rejected or the update targets
                a missing document
        """
        async with self._lock:
            self._check_available()
            reason = self._rejections.get(mutation.entity_id)
            if reason is not None:
                raise RemoteRejection(reason, entity_id=mutation.entity_id, status_code=403)

            audit = AuditDocument(
                user=user_to_document(user),
                client_timestamp=mutation.client_timestamp,
                server_timestamp=now_ms(),
            )
            if isinstance(mutation, FeatureMutation):
                self._apply_feature_mutation(mutation, audit)
            elif isinstance(mutation, ObservationMutation):
                self._apply_observation_mutation(mutation, audit)
            else:
                raise RemoteRejection(f"Unknown mutation: {mutation!r}")

            self.applied.append(mutation)

        logger.debug(
            "Remote applied mutation",
            extra={"entity_id": mutation.entity_id, "type": mutation.type.value},
        )

    def _apply_feature_mutation(self, mutation: FeatureMutation, audit: AuditDocument) -> None:
        features = self._features[mutation.project_id]
        existing = features.get(mutation.feature_id)

        if mutation.type == MutationType.CREATE:
            if mutation.new_location is None:
                raise RemoteRejection(
                    "Feature has no location", entity_id=mutation.feature_id, status_code=400
                )
            doc = FeatureDocument(
                id=mutation.feature_id,
                project_id=mutation.project_id,
                layer_id=mutation.layer_id,
                location=point_to_document(mutation.new_location),
                created=existing.created if existing else audit,
                last_modified=audit,
            )
            features[mutation.feature_id] = doc
            change_type = RemoteChangeType.MODIFIED if existing else RemoteChangeType.ADDED
            self._emit(
                mutation.project_id,
                RemoteChange(change_type, doc.id, feature_from_document(doc)),
            )
        elif mutation.type == MutationType.UPDATE:
            if existing is None:
                raise RemoteRejection(
                    "Feature does not exist", entity_id=mutation.feature_id, status_code=404
                )
            update: Dict[str, object] = {"last_modified": audit}
            if mutation.new_location is not None:
                update["location"] = point_to_document(mutation.new_location)
            doc = existing.model_copy(update=update)
            features[mutation.feature_id] = doc
            self._emit(
                mutation.project_id,
                RemoteChange(RemoteChangeType.MODIFIED, doc.id, feature_from_document(doc)),
            )
        elif mutation.type == MutationType.DELETE:
            self.remove_feature(mutation.project_id, mutation.feature_id)
        else:
            raise RemoteRejection(f"Unknown mutation type: {mutation.type}")

    def _apply_observation_mutation(
        self, mutation: ObservationMutation, audit: AuditDocument
    ) -> None:
        observations = self._observations[mutation.project_id]
        existing = observations.get(mutation.observation_id)

        if mutation.type == MutationType.CREATE:
            if mutation.feature_id not in self._features[mutation.project_id]:
                raise RemoteRejection(
                    f"Feature {mutation.feature_id} does not exist",
                    entity_id=mutation.observation_id,
                    status_code=409,
                )
            responses = dict(existing.responses) if existing else {}
            _apply_deltas(responses, mutation)
            observations[mutation.observation_id] = ObservationDocument(
                id=mutation.observation_id,
                project_id=mutation.project_id,
                feature_id=mutation.feature_id,
                form_id=mutation.form_id,
                responses=responses,
                created=existing.created if existing else audit,
                last_modified=audit,
            )
        elif mutation.type == MutationType.UPDATE:
            if existing is None:
                raise RemoteRejection(
                    "Observation does not exist",
                    entity_id=mutation.observation_id,
                    status_code=404,
                )
            responses = dict(existing.responses)
            _apply_deltas(responses, mutation)
            observations[mutation.observation_id] = existing.model_copy(
                update={"responses": responses, "last_modified": audit}
            )
        elif mutation.type == MutationType.DELETE:
            observations.pop(mutation.observation_id, None)
        else:
            raise RemoteRejection(f"Unknown mutation type: {mutation.type}")


def _apply_deltas(responses: Dict[str, object], mutation: ObservationMutation) -> None:
    for delta in mutation.response_deltas:
        if delta.new_value is None:
            responses.pop(delta.field_id, None)
        elif isinstance(delta.new_value, tuple):
            responses[delta.field_id] = list(delta.new_value)
        else:
            responses[delta.field_id] = delta.new_value
