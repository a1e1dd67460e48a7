"""
Domain entities for the Ground sync core.

All entities are frozen dataclasses. The local store builds a fresh instance
for every read, so callers always hold an immutable snapshot that later
writes cannot change underneath them.

Invariants:
    - Entity ids are stable strings assigned by the client
    - Feature and Observation audit info is derived from the last applied mutation
    - Soft-deleted entities carry EntityState.DELETED until finalized
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple, Union

# str / number for scalar fields, tuple of option ids for multiple choice.
ResponseValue = Union[str, int, float, Tuple[str, ...]]


def now_ms() -> int:
    """Current wall clock time in Unix milliseconds."""
    return int(time.time() * 1000)


def normalize_response_value(value: Any) -> Optional[ResponseValue]:
    """Coerce a decoded JSON value into a ResponseValue.

    Lists become tuples so snapshots stay immutable and hashable.
    """
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value)
    if isinstance(value, (str, int, float)):
        return value
    raise ValueError(f"Unsupported response value: {value!r}")


class EntityState(Enum):
    """Local lifecycle state of a Feature or Observation."""

    DEFAULT = "default"
    DELETED = "deleted"


class FieldType(Enum):
    """Form field input types."""

    TEXT = "text"
    NUMBER = "number"
    MULTIPLE_CHOICE = "multiple_choice"
    DATE = "date"
    TIME = "time"
    PHOTO = "photo"


@dataclass(frozen=True)
class User:
    """A user known to this device."""

    id: str
    email: str
    display_name: str


@dataclass(frozen=True)
class AuditInfo:
    """Who changed an entity and when.

    Attributes:
        user: Author of the change
        client_timestamp: Device clock at the time of the change (Unix ms)
        server_timestamp: Time the remote store accepted the change, if known
    """

    user: User
    client_timestamp: int
    server_timestamp: Optional[int] = None

    @classmethod
    def now(cls, user: User) -> AuditInfo:
        return cls(user=user, client_timestamp=now_ms())


@dataclass(frozen=True)
class Point:
    """A WGS84 coordinate."""

    latitude: float
    longitude: float


@dataclass(frozen=True)
class Option:
    id: str
    code: str
    label: str


@dataclass(frozen=True)
class Field:
    """A single question in a form."""

    id: str
    label: str
    type: FieldType
    required: bool = False
    options: Tuple[Option, ...] = ()


@dataclass(frozen=True)
class Form:
    id: str
    fields: Tuple[Field, ...] = ()

    def get_field(self, field_id: str) -> Optional[Field]:
        for f in self.fields:
            if f.id == field_id:
                return f
        return None


@dataclass(frozen=True)
class Layer:
    """A feature layer; features in a layer share one form."""

    id: str
    name: str
    color: str = ""
    form: Optional[Form] = None


@dataclass(frozen=True)
class OfflineBaseMapSource:
    """URL of a GeoJSON index describing downloadable tile archives."""

    url: str


@dataclass(frozen=True)
class Project:
    id: str
    title: str
    description: str = ""
    layers: Tuple[Layer, ...] = ()
    offline_base_map_sources: Tuple[OfflineBaseMapSource, ...] = ()

    def get_layer(self, layer_id: str) -> Optional[Layer]:
        for layer in self.layers:
            if layer.id == layer_id:
                return layer
        return None


@dataclass(frozen=True)
class Feature:
    """A mapped point of interest.

    Attributes:
        id: Feature identifier
        project_id: Owning project
        layer_id: Owning layer
        location: Feature geometry
        created: Audit info of the creating mutation
        last_modified: Audit info of the last applied mutation
        custom_id: Optional user-facing identifier
        caption: Optional label
        state: Soft-delete state
    """

    id: str
    project_id: str
    layer_id: str
    location: Point
    created: AuditInfo
    last_modified: AuditInfo
    custom_id: str = ""
    caption: str = ""
    state: EntityState = EntityState.DEFAULT

    @property
    def is_deleted(self) -> bool:
        return self.state == EntityState.DELETED


@dataclass(frozen=True)
class Observation:
    """A set of form responses recorded against a feature.

    Attributes:
        id: Observation identifier
        project_id: Owning project
        feature_id: Feature the observation was made for
        form_id: Form the responses answer
        responses: Read-only mapping of field id to response value
        created: Audit info of the creating mutation
        last_modified: Audit info of the last applied mutation
        state: Soft-delete state
    """

    id: str
    project_id: str
    feature_id: str
    form_id: str
    created: AuditInfo
    last_modified: AuditInfo
    responses: Mapping[str, ResponseValue] = field(default_factory=dict)
    state: EntityState = EntityState.DEFAULT

    def __post_init__(self) -> None:
        object.__setattr__(self, "responses", MappingProxyType(dict(self.responses)))

    @property
    def is_deleted(self) -> bool:
        return self.state == EntityState.DELETED
