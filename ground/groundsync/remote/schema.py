"""
Remote document models and conversions to and from domain objects.

The remote store keeps one JSON document per project, feature and
observation. These pydantic models validate documents on the way in and
serialize them on the way out; converters map them to the immutable
domain dataclasses used by the rest of the package.

How to change safely:
    - Documents are shared with other clients; add fields as optional
    - Keep response values JSON-native (lists, not tuples)
"""

from __future__ import annotations

from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field as PydanticField

from ..model.entities import (
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
    normalize_response_value,
)
from ..model.mutation import ResponseDelta

JsonResponseValue = Union[int, float, str, List[str]]


class _Document(BaseModel):
    model_config = ConfigDict(extra="ignore")


class UserDocument(_Document):
    id: str
    email: str = ""
    display_name: str = ""


class AuditDocument(_Document):
    user: UserDocument
    client_timestamp: int
    server_timestamp: Optional[int] = None


class PointDocument(_Document):
    latitude: float = PydanticField(ge=-90, le=90)
    longitude: float = PydanticField(ge=-180, le=180)


class OptionDocument(_Document):
    id: str
    code: str = ""
    label: str = ""


class FieldDocument(_Document):
    id: str
    label: str = ""
    type: FieldType
    required: bool = False
    options: List[OptionDocument] = PydanticField(default_factory=list)


class FormDocument(_Document):
    id: str
    fields: List[FieldDocument] = PydanticField(default_factory=list)


class LayerDocument(_Document):
    id: str
    name: str = ""
    color: str = ""
    form: Optional[FormDocument] = None


class BaseMapSourceDocument(_Document):
    url: str


class ProjectDocument(_Document):
    id: str
    title: str = ""
    description: str = ""
    layers: List[LayerDocument] = PydanticField(default_factory=list)
    offline_base_map_sources: List[BaseMapSourceDocument] = PydanticField(default_factory=list)


class FeatureDocument(_Document):
    id: str
    project_id: str
    layer_id: str
    location: PointDocument
    custom_id: str = ""
    caption: str = ""
    created: AuditDocument
    last_modified: AuditDocument


class ObservationDocument(_Document):
    id: str
    project_id: str
    feature_id: str
    form_id: str
    responses: Dict[str, JsonResponseValue] = PydanticField(default_factory=dict)
    created: AuditDocument
    last_modified: AuditDocument


class ResponseDeltaDocument(_Document):
    field_id: str
    new_value: Optional[JsonResponseValue] = None


class FeaturePatch(_Document):
    """Partial update of a feature document."""

    location: Optional[PointDocument] = None
    last_modified: AuditDocument


class ObservationPatch(_Document):
    """Partial update of an observation document; a null value clears a response."""

    response_deltas: List[ResponseDeltaDocument] = PydanticField(default_factory=list)
    last_modified: AuditDocument


# Conversions


def user_to_document(user: User) -> UserDocument:
    return UserDocument(id=user.id, email=user.email, display_name=user.display_name)


def user_from_document(doc: UserDocument) -> User:
    return User(id=doc.id, email=doc.email, display_name=doc.display_name)


def audit_to_document(audit: AuditInfo) -> AuditDocument:
    return AuditDocument(
        user=user_to_document(audit.user),
        client_timestamp=audit.client_timestamp,
        server_timestamp=audit.server_timestamp,
    )


def audit_from_document(doc: AuditDocument) -> AuditInfo:
    return AuditInfo(
        user=user_from_document(doc.user),
        client_timestamp=doc.client_timestamp,
        server_timestamp=doc.server_timestamp,
    )


def point_to_document(point: Point) -> PointDocument:
    return PointDocument(latitude=point.latitude, longitude=point.longitude)


def project_from_document(doc: ProjectDocument) -> Project:
    layers = []
    for layer in doc.layers:
        form = None
        if layer.form is not None:
            form = Form(
                id=layer.form.id,
                fields=tuple(
                    Field(
                        id=f.id,
                        label=f.label,
                        type=f.type,
                        required=f.required,
                        options=tuple(
                            Option(id=o.id, code=o.code, label=o.label) for o in f.options
                        ),
                    )
                    for f in layer.form.fields
                ),
            )
        layers.append(Layer(id=layer.id, name=layer.name, color=layer.color, form=form))
    return Project(
        id=doc.id,
        title=doc.title,
        description=doc.description,
        layers=tuple(layers),
        offline_base_map_sources=tuple(
            OfflineBaseMapSource(url=s.url) for s in doc.offline_base_map_sources
        ),
    )


def project_to_document(project: Project) -> ProjectDocument:
    return ProjectDocument(
        id=project.id,
        title=project.title,
        description=project.description,
        layers=[
            LayerDocument(
                id=layer.id,
                name=layer.name,
                color=layer.color,
                form=None
                if layer.form is None
                else FormDocument(
                    id=layer.form.id,
                    fields=[
                        FieldDocument(
                            id=f.id,
                            label=f.label,
                            type=f.type,
                            required=f.required,
                            options=[
                                OptionDocument(id=o.id, code=o.code, label=o.label)
                                for o in f.options
                            ],
                        )
                        for f in layer.form.fields
                    ],
                ),
            )
            for layer in project.layers
        ],
        offline_base_map_sources=[
            BaseMapSourceDocument(url=s.url) for s in project.offline_base_map_sources
        ],
    )


def feature_from_document(doc: FeatureDocument) -> Feature:
    return Feature(
        id=doc.id,
        project_id=doc.project_id,
        layer_id=doc.layer_id,
        location=Point(doc.location.latitude, doc.location.longitude),
        created=audit_from_document(doc.created),
        last_modified=audit_from_document(doc.last_modified),
        custom_id=doc.custom_id,
        caption=doc.caption,
        state=EntityState.DEFAULT,
    )


def feature_to_document(feature: Feature) -> FeatureDocument:
    return FeatureDocument(
        id=feature.id,
        project_id=feature.project_id,
        layer_id=feature.layer_id,
        location=point_to_document(feature.location),
        custom_id=feature.custom_id,
        caption=feature.caption,
        created=audit_to_document(feature.created),
        last_modified=audit_to_document(feature.last_modified),
    )


def _json_value(value):
    return list(value) if isinstance(value, tuple) else value


def observation_from_document(doc: ObservationDocument) -> Observation:
    return Observation(
        id=doc.id,
        project_id=doc.project_id,
        feature_id=doc.feature_id,
        form_id=doc.form_id,
        responses={k: normalize_response_value(v) for k, v in doc.responses.items()},
        created=audit_from_document(doc.created),
        last_modified=audit_from_document(doc.last_modified),
        state=EntityState.DEFAULT,
    )


def observation_to_document(observation: Observation) -> ObservationDocument:
    return ObservationDocument(
        id=observation.id,
        project_id=observation.project_id,
        feature_id=observation.feature_id,
        form_id=observation.form_id,
        responses={k: _json_value(v) for k, v in observation.responses.items()},
        created=audit_to_document(observation.created),
        last_modified=audit_to_document(observation.last_modified),
    )


def delta_to_document(delta: ResponseDelta) -> ResponseDeltaDocument:
    return ResponseDeltaDocument(field_id=delta.field_id, new_value=_json_value(delta.new_value))
