"""
Domain model for the Ground sync core.

Entities (projects, layers, forms, features, observations), the mutation
union queued for delivery, and the offline basemap entities.
"""

from .basemap import (
    LatLngBounds,
    OfflineArea,
    OfflineAreaState,
    TileSource,
    TileSourceState,
)
from .entities import (
    AuditInfo,
    EntityState,
    Feature,
    Field,
    FieldType,
    Form,
    Layer,
    Observation,
    OfflineBaseMapSource,
    Option,
    Point,
    Project,
    User,
)
from .mutation import (
    FeatureMutation,
    Mutation,
    MutationType,
    ObservationMutation,
    ResponseDelta,
    SyncStatus,
)

__all__ = [
    # Entities
    "AuditInfo",
    "EntityState",
    "Feature",
    "Field",
    "FieldType",
    "Form",
    "Layer",
    "Observation",
    "OfflineBaseMapSource",
    "Option",
    "Point",
    "Project",
    "User",
    # Mutations
    "FeatureMutation",
    "Mutation",
    "MutationType",
    "ObservationMutation",
    "ResponseDelta",
    "SyncStatus",
    # Basemaps
    "LatLngBounds",
    "OfflineArea",
    "OfflineAreaState",
    "TileSource",
    "TileSourceState",
]
