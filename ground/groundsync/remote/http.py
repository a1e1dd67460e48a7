"""
HTTP remote data store backed by a REST document API.

Resource layout:
    GET    /projects/{project_id}
    GET    /projects/{project_id}/features
    PUT    /projects/{project_id}/features/{feature_id}          (create, idempotent)
    PATCH  /projects/{project_id}/features/{feature_id}          (update)
    DELETE /projects/{project_id}/features/{feature_id}          (404 counts as success)
    GET    /projects/{project_id}/features/{feature_id}/observations
    PUT    /projects/{project_id}/features/{feature_id}/observations/{observation_id}
    PATCH  /projects/{project_id}/features/{feature_id}/observations/{observation_id}
    DELETE /projects/{project_id}/features/{feature_id}/observations/{observation_id}

Failure classification:
    - Transport errors, timeouts, 5xx and 429: TransientNetworkFailure
    - Any other 4xx: RemoteRejection
    - A success response whose body is not JSON: TransientNetworkFailure
      (typically a proxy or captive portal answering in place of the API)

The feature change stream is implemented by polling the feature list and
diffing it against the previous poll.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ..errors import RemoteRejection, SyncError, TransientNetworkFailure
from ..model.entities import AuditInfo, Feature, Observation, Project, User
from ..model.mutation import FeatureMutation, Mutation, MutationType, ObservationMutation
from .base import RemoteChange, RemoteChangeType
from .schema import (
    FeatureDocument,
    FeaturePatch,
    ObservationDocument,
    ObservationPatch,
    ProjectDocument,
    audit_to_document,
    delta_to_document,
    feature_from_document,
    observation_from_document,
    point_to_document,
    project_from_document,
)

logger = logging.getLogger(__name__)


class HttpRemoteDataStore:
    """Remote data store speaking JSON over HTTP.

    Attributes:
        base_url: API root
        poll_interval_seconds: Delay between change-stream polls

    Example:
        >>> remote = HttpRemoteDataStore("https://ground.example.org/api", api_token="...")
        >>> await remote.connect()
        >>> features = await remote.load_features("project_1")
        >>> await remote.close()
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the HTTP backend.

        Args:
            base_url: API root URL
            api_token: Bearer token sent with every request
            timeout_seconds: Per-request timeout
            poll_interval_seconds: Change-stream poll interval
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        if self._client is not None:
            return
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )
        logger.debug("Connected to remote store", extra={"base_url": self.base_url})

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Disconnected from remote store")

    async def __aenter__(self) -> HttpRemoteDataStore:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        entity_id: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
        missing_ok: bool = False,
    ) -> Optional[httpx.Response]:
        """Send a request and classify failures.

        Returns:
            The response, or None for a 404 when missing_ok is set

        Raises:
            TransientNetworkFailure: Transport error, timeout, 5xx or 429
            RemoteRejection: Any other non-success status
        """
        await self.connect()
        client = self._client
        if client is None:
            raise SyncError("Remote store is not connected")

        try:
            response = await client.request(method, path, json=json)
        except httpx.TransportError as e:
            raise TransientNetworkFailure(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if response.is_success:
            return response
        if status == 404 and missing_ok:
            return None
        if status == 429 or status >= 500:
            raise TransientNetworkFailure(
                f"{method} {path} returned {status}", status_code=status
            )
        raise RemoteRejection(
            f"{method} {path} rejected ({status}): {response.text}",
            entity_id=entity_id,
            status_code=status,
        )

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            request = response.request
            raise TransientNetworkFailure(
                f"{request.method} {request.url.path} returned a non-JSON body"
            ) from e

    def _parse(self, model, payload: Any, entity_id: Optional[str] = None):
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise RemoteRejection(
                f"Malformed {model.__name__}: {e}", entity_id=entity_id
            ) from e

    # Reads

    async def load_project(self, project_id: str) -> Optional[Project]:
        response = await self._request("GET", f"/projects/{project_id}", missing_ok=True)
        if response is None:
            return None
        document = self._parse(ProjectDocument, self._json(response), project_id)
        return project_from_document(document)

    async def _load_feature_documents(self, project_id: str) -> List[FeatureDocument]:
        response = await self._request("GET", f"/projects/{project_id}/features")
        if response is None:
            return []
        return [self._parse(FeatureDocument, item) for item in self._json(response)]

    async def load_features(self, project_id: str) -> List[Feature]:
        return [feature_from_document(d) for d in await self._load_feature_documents(project_id)]

    async def load_observations(self, project_id: str, feature_id: str) -> List[Observation]:
        response = await self._request(
            "GET",
            f"/projects/{project_id}/features/{feature_id}/observations",
            missing_ok=True,
        )
        if response is None:
            return []
        return [
            observation_from_document(self._parse(ObservationDocument, item))
            for item in self._json(response)
        ]

    async def feature_changes_once_and_stream(
        self, project_id: str
    ) -> AsyncIterator[RemoteChange]:
        """Poll the feature list and yield differences.

        Every feature of the first successful poll is yielded as ADDED.
        Transient failures, including on the first poll, are logged and the
        poll is retried on the next interval.
        """
        known: Dict[str, FeatureDocument] = {}
        first = True

        while True:
            if not first:
                await asyncio.sleep(self.poll_interval_seconds)
            first = False
            try:
                current = {d.id: d for d in await self._load_feature_documents(project_id)}
            except TransientNetworkFailure as e:
                logger.warning(
                    "Feature poll failed",
                    extra={"project_id": project_id, "error": str(e)},
                )
                continue

            for feature_id, doc in current.items():
                previous = known.get(feature_id)
                if previous is None:
                    yield RemoteChange(
                        RemoteChangeType.ADDED, feature_id, feature_from_document(doc)
                    )
                elif previous != doc:
                    yield RemoteChange(
                        RemoteChangeType.MODIFIED, feature_id, feature_from_document(doc)
                    )
            for feature_id in known.keys() - current.keys():
                yield RemoteChange(RemoteChangeType.REMOVED, feature_id)
            known = current

    # Writes

    async def apply_mutation(self, mutation: Mutation, user: User) -> None:
        audit = audit_to_document(AuditInfo(user=user, client_timestamp=mutation.client_timestamp))

        if isinstance(mutation, FeatureMutation):
            path = f"/projects/{mutation.project_id}/features/{mutation.feature_id}"
            if mutation.type == MutationType.CREATE:
                if mutation.new_location is None:
                    raise RemoteRejection("Feature has no location", entity_id=mutation.feature_id)
                body = FeatureDocument(
                    id=mutation.feature_id,
                    project_id=mutation.project_id,
                    layer_id=mutation.layer_id,
                    location=point_to_document(mutation.new_location),
                    created=audit,
                    last_modified=audit,
                )
                await self._request(
                    "PUT", path, entity_id=mutation.entity_id, json=body.model_dump(mode="json")
                )
            elif mutation.type == MutationType.UPDATE:
                patch = FeaturePatch(
                    location=point_to_document(mutation.new_location)
                    if mutation.new_location is not None
                    else None,
                    last_modified=audit,
                )
                await self._request(
                    "PATCH",
                    path,
                    entity_id=mutation.entity_id,
                    json=patch.model_dump(mode="json", exclude_none=True),
                )
            elif mutation.type == MutationType.DELETE:
                await self._request("DELETE", path, entity_id=mutation.entity_id, missing_ok=True)
            else:
                raise RemoteRejection(f"Unknown mutation type: {mutation.type}")

        elif isinstance(mutation, ObservationMutation):
            path = (
                f"/projects/{mutation.project_id}/features/{mutation.feature_id}"
                f"/observations/{mutation.observation_id}"
            )
            if mutation.type == MutationType.CREATE:
                responses = {}
                for delta in mutation.response_deltas:
                    value = delta_to_document(delta).new_value
                    if value is None:
                        responses.pop(delta.field_id, None)
                    else:
                        responses[delta.field_id] = value
                body = ObservationDocument(
                    id=mutation.observation_id,
                    project_id=mutation.project_id,
                    feature_id=mutation.feature_id,
                    form_id=mutation.form_id,
                    responses=responses,
                    created=audit,
                    last_modified=audit,
                )
                await self._request(
                    "PUT", path, entity_id=mutation.entity_id, json=body.model_dump(mode="json")
                )
            elif mutation.type == MutationType.UPDATE:
                patch = ObservationPatch(
                    response_deltas=[delta_to_document(d) for d in mutation.response_deltas],
                    last_modified=audit,
                )
                await self._request(
                    "PATCH", path, entity_id=mutation.entity_id, json=patch.model_dump(mode="json")
                )
            elif mutation.type == MutationType.DELETE:
                await self._request("DELETE", path, entity_id=mutation.entity_id, missing_ok=True)
            else:
                raise RemoteRejection(f"Unknown mutation type: {mutation.type}")

        else:
            raise RemoteRejection(f"Unknown mutation: {mutation!r}")

        logger.debug(
            "Pushed mutation",
            extra={"entity_id": mutation.entity_id, "type": mutation.type.value},
        )
