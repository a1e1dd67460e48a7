"""
Error types for the Ground sync core.

This module defines every exception raised by the local store, the sync
engine and the offline basemap pipeline:
- GroundError: Base exception
- StoreError and subclasses: Local storage failures
- SyncError and subclasses: Remote delivery failures
- BasemapError and subclasses: Offline basemap failures

Invariants:
    - All errors inherit from GroundError
    - Errors carry a stable code and structured details
    - Storage errors are raised to the caller, never swallowed

Propagation:
    ConstraintViolation and InvalidMutationType are fatal for the operation
    that raised them. TransientNetworkFailure is retried by the scheduler.
    RemoteRejection keeps the mutation queued and is surfaced as a sync error.
    TileDownloadFailure marks the tile (and its areas) FAILED.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class GroundError(Exception):
    """Base exception for all Ground sync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "GROUND_ERROR"
        self.details = details or {}


# Local store


class StoreError(GroundError):
    """Local store operation failed.

    Raised directly for unexpected SQLite failures (I/O errors, locked
    database) and used as the base for more specific store errors.
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code or "STORE_ERROR", details=details)


class StoreNotInitializedError(StoreError):
    """Local database has not been created yet."""

    def __init__(self, db_path: str) -> None:
        super().__init__(
            f"Local database not initialized: {db_path}",
            code="STORE_NOT_INITIALIZED",
            details={"db_path": db_path},
        )
        self.db_path = db_path


class ConstraintViolation(StoreError):
    """Referential integrity would be broken.

    Raised when:
    - A feature references a missing project or layer
    - An observation references a missing feature or form
    - A mutation author is not a known user
    """

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        missing: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONSTRAINT_VIOLATION",
            details={"entity_id": entity_id, "missing": missing},
        )
        self.entity_id = entity_id
        self.missing = missing


class InvalidMutationType(StoreError):
    """Mutation cannot be applied to the entity's current state.

    Raised when:
    - CREATE targets an id that already exists
    - UPDATE or DELETE targets an absent or already deleted entity
    - The mutation type or variant is unknown
    """

    def __init__(
        self,
        message: str,
        mutation_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="INVALID_MUTATION_TYPE",
            details={"mutation_type": mutation_type, "entity_id": entity_id},
        )
        self.mutation_type = mutation_type
        self.entity_id = entity_id


class InvalidStateTransition(StoreError):
    """Tile source or offline area state change is not allowed."""

    def __init__(self, entity_id: str, from_state: str, to_state: str) -> None:
        super().__init__(
            f"Invalid state transition for {entity_id}: {from_state} -> {to_state}",
            code="INVALID_STATE_TRANSITION",
            details={"entity_id": entity_id, "from": from_state, "to": to_state},
        )
        self.entity_id = entity_id
        self.from_state = from_state
        self.to_state = to_state


class NotFoundError(StoreError):
    """Requested entity does not exist in the local store."""

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(
            f"{kind} not found: {entity_id}",
            code="NOT_FOUND",
            details={"kind": kind, "entity_id": entity_id},
        )
        self.kind = kind
        self.entity_id = entity_id


# Remote sync


class SyncError(GroundError):
    """Base class for remote delivery failures."""

    pass


class TransientNetworkFailure(SyncError):
    """Remote store is unreachable; the operation should be retried.

    Raised when:
    - There is no network connectivity
    - The request times out
    - The remote returns 5xx or 429
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(
            message,
            code="TRANSIENT_NETWORK_FAILURE",
            details={"status_code": status_code},
        )
        self.status_code = status_code


class RemoteRejection(SyncError):
    """Remote store refused a well-formed request.

    The mutation stays queued and is surfaced to the user rather than
    being retried forever.
    """

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="REMOTE_REJECTION",
            details={"entity_id": entity_id, "status_code": status_code},
        )
        self.entity_id = entity_id
        self.status_code = status_code


# Offline basemaps


class BasemapError(GroundError):
    """Base class for offline basemap failures."""

    pass


class TileFailureReason(Enum):
    """Why a tile source download failed."""

    NETWORK = "network"
    DISK = "disk"
    CORRUPT = "corrupt"


class TileDownloadFailure(BasemapError):
    """A tile source archive could not be downloaded.

    Attributes:
        tile_source_id: Tile source that failed
        reason: Failure class (network, disk or corrupt archive)
    """

    def __init__(self, message: str, tile_source_id: str, reason: TileFailureReason) -> None:
        super().__init__(
            message,
            code=f"TILE_DOWNLOAD_{reason.name}",
            details={"tile_source_id": tile_source_id, "reason": reason.value},
        )
        self.tile_source_id = tile_source_id
        self.reason = reason


class NoBaseMapSourceError(BasemapError):
    """Project declares no offline basemap source."""

    def __init__(self, project_id: str) -> None:
        super().__init__(
            f"No offline basemap source for project {project_id}",
            code="NO_BASEMAP_SOURCE",
            details={"project_id": project_id},
        )
        self.project_id = project_id


class NoIntersectingTilesError(BasemapError):
    """Requested bounds do not intersect any declared tile source."""

    def __init__(self, bounds: Any) -> None:
        super().__init__(
            f"No tile sources intersect {bounds}",
            code="NO_INTERSECTING_TILES",
            details={"bounds": str(bounds)},
        )


class GeocodingError(BasemapError):
    """Reverse geocoding lookup failed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="GEOCODING_ERROR")
