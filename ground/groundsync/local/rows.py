"""
Conversions between SQLite rows and domain objects.

Every read builds new domain objects from row data, which is what makes
store reads copy-on-read snapshots.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any, Dict, List, Tuple

from ..model.basemap import (
    LatLngBounds,
    OfflineArea,
    OfflineAreaState,
    TileSource,
    TileSourceState,
)
from ..model.entities import (
    AuditInfo,
    EntityState,
    Feature,
    Field,
    FieldType,
    Observation,
    Option,
    Point,
    User,
    normalize_response_value,
)
from ..model.mutation import (
    FeatureMutation,
    MutationType,
    ObservationMutation,
    ResponseDelta,
    SyncStatus,
)


def user_to_dict(user: User) -> Dict[str, Any]:
    return {"id": user.id, "email": user.email, "display_name": user.display_name}


def user_from_dict(data: Dict[str, Any]) -> User:
    return User(
        id=data["id"],
        email=data.get("email", ""),
        display_name=data.get("display_name", ""),
    )


def audit_to_json(audit: AuditInfo) -> str:
    return json.dumps(
        {
            "user": user_to_dict(audit.user),
            "client_timestamp": audit.client_timestamp,
            "server_timestamp": audit.server_timestamp,
        }
    )


def audit_from_json(blob: str) -> AuditInfo:
    data = json.loads(blob)
    return AuditInfo(
        user=user_from_dict(data["user"]),
        client_timestamp=data["client_timestamp"],
        server_timestamp=data.get("server_timestamp"),
    )


def row_to_user(row: sqlite3.Row) -> User:
    return User(id=row["id"], email=row["email"], display_name=row["display_name"])


def options_to_json(options: Tuple[Option, ...]) -> str:
    return json.dumps([{"id": o.id, "code": o.code, "label": o.label} for o in options])


def row_to_field(row: sqlite3.Row) -> Field:
    options = tuple(
        Option(id=o["id"], code=o.get("code", ""), label=o.get("label", ""))
        for o in json.loads(row["options_json"])
    )
    return Field(
        id=row["id"],
        label=row["label"],
        type=FieldType(row["type"]),
        required=bool(row["required"]),
        options=options,
    )


def row_to_feature(row: sqlite3.Row) -> Feature:
    return Feature(
        id=row["id"],
        project_id=row["project_id"],
        layer_id=row["layer_id"],
        location=Point(row["latitude"], row["longitude"]),
        created=audit_from_json(row["created_json"]),
        last_modified=audit_from_json(row["last_modified_json"]),
        custom_id=row["custom_id"],
        caption=row["caption"],
        state=EntityState(row["state"]),
    )


def responses_to_json(responses: Dict[str, Any]) -> str:
    return json.dumps(
        {k: list(v) if isinstance(v, tuple) else v for k, v in responses.items()}
    )


def responses_from_json(blob: str) -> Dict[str, Any]:
    return {k: normalize_response_value(v) for k, v in json.loads(blob).items()}


def row_to_observation(row: sqlite3.Row) -> Observation:
    return Observation(
        id=row["id"],
        project_id=row["project_id"],
        feature_id=row["feature_id"],
        form_id=row["form_id"],
        responses=responses_from_json(row["responses_json"]),
        created=audit_from_json(row["created_json"]),
        last_modified=audit_from_json(row["last_modified_json"]),
        state=EntityState(row["state"]),
    )


def deltas_to_json(deltas: Tuple[ResponseDelta, ...]) -> str:
    return json.dumps(
        [
            {
                "field_id": d.field_id,
                "new_value": list(d.new_value) if isinstance(d.new_value, tuple) else d.new_value,
            }
            for d in deltas
        ]
    )


def deltas_from_json(blob: str) -> Tuple[ResponseDelta, ...]:
    return tuple(
        ResponseDelta(field_id=d["field_id"], new_value=normalize_response_value(d["new_value"]))
        for d in json.loads(blob)
    )


def row_to_feature_mutation(row: sqlite3.Row) -> FeatureMutation:
    location = None
    if row["new_latitude"] is not None and row["new_longitude"] is not None:
        location = Point(row["new_latitude"], row["new_longitude"])
    return FeatureMutation(
        id=row["id"],
        type=MutationType(row["type"]),
        project_id=row["project_id"],
        feature_id=row["feature_id"],
        layer_id=row["layer_id"],
        user_id=row["user_id"],
        client_timestamp=row["client_timestamp"],
        new_location=location,
        retry_count=row["retry_count"],
        last_error=row["last_error"],
        sync_status=SyncStatus(row["sync_status"]),
    )


def row_to_observation_mutation(row: sqlite3.Row) -> ObservationMutation:
    return ObservationMutation(
        id=row["id"],
        type=MutationType(row["type"]),
        project_id=row["project_id"],
        feature_id=row["feature_id"],
        layer_id=row["layer_id"],
        observation_id=row["observation_id"],
        form_id=row["form_id"],
        user_id=row["user_id"],
        client_timestamp=row["client_timestamp"],
        response_deltas=deltas_from_json(row["response_deltas_json"]),
        retry_count=row["retry_count"],
        last_error=row["last_error"],
        sync_status=SyncStatus(row["sync_status"]),
    )


def bounds_params(bounds: LatLngBounds) -> List[float]:
    return [
        bounds.south_west.latitude,
        bounds.south_west.longitude,
        bounds.north_east.latitude,
        bounds.north_east.longitude,
    ]


def row_to_bounds(row: sqlite3.Row) -> LatLngBounds:
    return LatLngBounds.of(row["south"], row["west"], row["north"], row["east"])


def row_to_tile_source(row: sqlite3.Row) -> TileSource:
    return TileSource(
        id=row["id"],
        url=row["url"],
        path=row["path"],
        bounds=row_to_bounds(row),
        state=TileSourceState(row["state"]),
        last_error=row["last_error"],
    )


def row_to_offline_area(row: sqlite3.Row) -> OfflineArea:
    return OfflineArea(
        id=row["id"],
        bounds=row_to_bounds(row),
        name=row["name"],
        state=OfflineAreaState(row["state"]),
    )
