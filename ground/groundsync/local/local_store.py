"""
Local SQLite store for the Ground sync core.

This module manages the on-device database that stores:
- Projects with their layers, forms and offline basemap sources
- Features and observations (the local baseline plus optimistic edits)
- The pending mutation queue (one table per mutation variant)
- Tile sources and offline areas for offline basemaps

The store applies user edits optimistically and queues them in the same
transaction, merges incoming remote snapshots with undelivered edits, and
removes queue entries once the sync worker confirms delivery.

Invariants:
    - One SQLite file per device profile
    - Every multi-statement write runs in a single BEGIN IMMEDIATE transaction
    - apply_and_enqueue writes the entity and the queue entry together or not at all
    - finalize is atomic per mutation and idempotent
    - Reads return freshly built immutable snapshots

How to change safely:
    - Schema migrations must keep existing queue rows readable
    - Never add ON DELETE CASCADE from entities to the mutation tables;
      the queue must outlive the rows it describes
    - Test merges with pending mutations in both timestamp orders

Table schema:
    features:
        - id TEXT PRIMARY KEY
        - project_id TEXT -> projects(id)
        - layer_id TEXT -> layers(id)
        - latitude REAL, longitude REAL
        - state TEXT (default | deleted)
        - created_json TEXT, last_modified_json TEXT (AuditInfo)

    observations:
        - id TEXT PRIMARY KEY
        - feature_id TEXT -> features(id)
        - form_id TEXT -> forms(id)
        - responses_json TEXT
        - state TEXT, created_json TEXT, last_modified_json TEXT

    feature_mutations / observation_mutations:
        - id INTEGER PRIMARY KEY AUTOINCREMENT (queue order)
        - target ids, type, user_id, client_timestamp, payload
        - retry_count, last_error, sync_status

    tile_sources:
        - id TEXT PRIMARY KEY, url, path, extent, state, last_error

    offline_areas:
        - id TEXT PRIMARY KEY, name, bounds, state
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, List, Optional, Sequence, TypeVar

from ..errors import (
    ConstraintViolation,
    GroundError,
    InvalidMutationType,
    InvalidStateTransition,
    NotFoundError,
    StoreError,
    StoreNotInitializedError,
)
from ..model.basemap import (
    OfflineArea,
    OfflineAreaState,
    TileSource,
    TileSourceState,
    can_transition_area,
    can_transition_tile,
)
from ..model.entities import (
    AuditInfo,
    EntityState,
    Feature,
    Form,
    Layer,
    Observation,
    OfflineBaseMapSource,
    Project,
    User,
)
from ..model.mutation import (
    FeatureMutation,
    Mutation,
    MutationType,
    ObservationMutation,
    SyncStatus,
    sort_mutations,
)
from . import rows
from .merge import (
    apply_feature_mutations,
    apply_observation_mutations,
    apply_response_deltas,
    fields_touched_after,
    is_superseded,
    location_set_after,
)
from .notifier import ChangeNotifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Table groups published to streaming readers.
FEATURES = "features"
OBSERVATIONS = "observations"
MUTATIONS = "mutations"
PROJECTS = "projects"
TILE_SOURCES = "tile_sources"
OFFLINE_AREAS = "offline_areas"


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Re-raise SQLite failures as typed store errors."""
    try:
        yield
    except GroundError:
        raise
    except sqlite3.IntegrityError as e:
        raise ConstraintViolation(f"{operation}: {e}") from e
    except sqlite3.Error as e:
        raise StoreError(f"{operation} failed: {e}", details={"operation": operation}) from e


class LocalStore:
    """SQLite-backed local data store.

    This class provides:
    - Project, user, feature and observation CRUD
    - Optimistic mutation apply + enqueue
    - Pending mutation queue reads, retry bookkeeping and finalization
    - Merge of remote snapshots with undelivered local edits
    - Tile source and offline area bookkeeping
    - Streaming reads (current snapshot, then one per committed change)

    Thread safety:
        Each operation opens its own connection. SQLite serializes writers
        via BEGIN IMMEDIATE and WAL mode lets readers proceed during writes.

    Example:
        >>> store = LocalStore("/var/lib/ground")
        >>> await store.initialize()
        >>> await store.insert_or_update_user(user)
        >>> await store.apply_and_enqueue(create_feature_mutation)
        >>> await store.get_pending_mutations(feature_id)
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        db_name: str = "ground.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        notifier: Optional[ChangeNotifier] = None,
    ) -> None:
        """Initialize the local store.

        Args:
            data_dir: Directory for the SQLite database file
            db_name: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            notifier: Change notifier shared with streaming readers
        """
        self.data_dir = Path(data_dir)
        self.db_name = db_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.notifier = notifier or ChangeNotifier()
        self._lock = asyncio.Lock()

    def get_db_path(self) -> Path:
        return self.data_dir / self.db_name

    @contextmanager
    def _get_connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the local database.

        Raises:
            StoreNotInitializedError: If the database doesn't exist and create=False
        """
        db_path = self.get_db_path()

        if not create and not db_path.exists():
            raise StoreNotInitializedError(str(db_path))

        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    @contextmanager
    def _write(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run the body in one IMMEDIATE transaction, rolling back on any error."""
        with self._get_connection() as conn, _translate_errors(operation):
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    @contextmanager
    def _read(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._get_connection() as conn, _translate_errors(operation):
            yield conn

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL DEFAULT '',
                display_name TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS layers (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                name TEXT NOT NULL DEFAULT '',
                color TEXT NOT NULL DEFAULT '',
                position INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_layers_project ON layers(project_id);

            CREATE TABLE IF NOT EXISTS forms (
                id TEXT PRIMARY KEY,
                layer_id TEXT NOT NULL REFERENCES layers(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS fields (
                form_id TEXT NOT NULL REFERENCES forms(id) ON DELETE CASCADE,
                id TEXT NOT NULL,
                position INTEGER NOT NULL,
                label TEXT NOT NULL DEFAULT '',
                type TEXT NOT NULL,
                required INTEGER NOT NULL DEFAULT 0,
                options_json TEXT NOT NULL DEFAULT '[]',
                PRIMARY KEY (form_id, id)
            );

            CREATE TABLE IF NOT EXISTS offline_base_map_sources (
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                url TEXT NOT NULL,
                PRIMARY KEY (project_id, position)
            );

            CREATE TABLE IF NOT EXISTS features (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                layer_id TEXT NOT NULL REFERENCES layers(id) ON DELETE CASCADE,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                custom_id TEXT NOT NULL DEFAULT '',
                caption TEXT NOT NULL DEFAULT '',
                state TEXT NOT NULL DEFAULT 'default',
                created_json TEXT NOT NULL,
                last_modified_json TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_features_project ON features(project_id, state);

            CREATE TABLE IF NOT EXISTS observations (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                feature_id TEXT NOT NULL REFERENCES features(id) ON DELETE CASCADE,
                form_id TEXT NOT NULL REFERENCES forms(id) ON DELETE CASCADE,
                responses_json TEXT NOT NULL DEFAULT '{}',
                state TEXT NOT NULL DEFAULT 'default',
                created_json TEXT NOT NULL,
                last_modified_json TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_observations_feature
                ON observations(feature_id, form_id, state);

            -- Mutation queue; no foreign keys so entries outlive their entities
            CREATE TABLE IF NOT EXISTS feature_mutations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                feature_id TEXT NOT NULL,
                project_id TEXT NOT NULL,
                layer_id TEXT NOT NULL,
                type TEXT NOT NULL,
                user_id TEXT NOT NULL,
                client_timestamp INTEGER NOT NULL,
                new_latitude REAL,
                new_longitude REAL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT NOT NULL DEFAULT '',
                sync_status TEXT NOT NULL DEFAULT 'pending'
            );

            CREATE INDEX IF NOT EXISTS idx_feature_mutations_feature
                ON feature_mutations(feature_id, client_timestamp);

            CREATE TABLE IF NOT EXISTS observation_mutations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                observation_id TEXT NOT NULL,
                feature_id TEXT NOT NULL,
                project_id TEXT NOT NULL,
                layer_id TEXT NOT NULL,
                form_id TEXT NOT NULL,
                type TEXT NOT NULL,
                user_id TEXT NOT NULL,
                client_timestamp INTEGER NOT NULL,
                response_deltas_json TEXT NOT NULL DEFAULT '[]',
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_error TEXT NOT NULL DEFAULT '',
                sync_status TEXT NOT NULL DEFAULT 'pending'
            );

            CREATE INDEX IF NOT EXISTS idx_observation_mutations_observation
                ON observation_mutations(observation_id, client_timestamp);
            CREATE INDEX IF NOT EXISTS idx_observation_mutations_feature
                ON observation_mutations(feature_id);

            CREATE TABLE IF NOT EXISTS tile_sources (
                id TEXT PRIMARY KEY,
                url TEXT NOT NULL,
                path TEXT NOT NULL,
                south REAL NOT NULL,
                west REAL NOT NULL,
                north REAL NOT NULL,
                east REAL NOT NULL,
                state TEXT NOT NULL DEFAULT 'pending',
                last_error TEXT NOT NULL DEFAULT ''
            );

            CREATE INDEX IF NOT EXISTS idx_tile_sources_state ON tile_sources(state);

            CREATE TABLE IF NOT EXISTS offline_areas (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                south REAL NOT NULL,
                west REAL NOT NULL,
                north REAL NOT NULL,
                east REAL NOT NULL,
                state TEXT NOT NULL DEFAULT 'pending'
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            with self._get_connection(create=True) as conn, _translate_errors("initialize"):
                self._create_schema(conn)
                logger.info(
                    "Initialized local database", extra={"db_path": str(self.get_db_path())}
                )

    async def exists(self) -> bool:
        return self.get_db_path().exists()

    # Users

    async def insert_or_update_user(self, user: User) -> None:
        with self._write("insert_or_update_user") as conn:
            conn.execute(
                """
                INSERT INTO users (id, email, display_name) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email, display_name = excluded.display_name
                """,
                (user.id, user.email, user.display_name),
            )

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._read("get_user") as conn:
            return self._load_user(conn, user_id)

    def _load_user(self, conn: sqlite3.Connection, user_id: str) -> Optional[User]:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return rows.row_to_user(row) if row else None

    def _require_user(self, conn: sqlite3.Connection, user_id: str, entity_id: str) -> User:
        user = self._load_user(conn, user_id)
        if user is None:
            raise ConstraintViolation(
                f"Unknown user {user_id} for {entity_id}", entity_id=entity_id, missing="user"
            )
        return user

    # Projects

    async def insert_or_update_project(self, project: Project) -> None:
        """Upsert a project with its layers, forms and basemap sources.

        Layers missing from the new definition are removed along with
        their features.
        """
        with self._write("insert_or_update_project") as conn:
            conn.execute(
                """
                INSERT INTO projects (id, title, description) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title, description = excluded.description
                """,
                (project.id, project.title, project.description),
            )

            layer_ids = [layer.id for layer in project.layers]
            placeholders = ",".join("?" for _ in layer_ids)
            if layer_ids:
                conn.execute(
                    f"DELETE FROM layers WHERE project_id = ? AND id NOT IN ({placeholders})",
                    (project.id, *layer_ids),
                )
            else:
                conn.execute("DELETE FROM layers WHERE project_id = ?", (project.id,))

            for position, layer in enumerate(project.layers):
                self._upsert_layer(conn, project.id, layer, position)

            conn.execute(
                "DELETE FROM offline_base_map_sources WHERE project_id = ?", (project.id,)
            )
            for position, source in enumerate(project.offline_base_map_sources):
                conn.execute(
                    "INSERT INTO offline_base_map_sources (project_id, position, url) "
                    "VALUES (?, ?, ?)",
                    (project.id, position, source.url),
                )

        self.notifier.publish(PROJECTS, FEATURES, OBSERVATIONS)

    def _upsert_layer(
        self, conn: sqlite3.Connection, project_id: str, layer: Layer, position: int
    ) -> None:
        conn.execute(
            """
            INSERT INTO layers (id, project_id, name, color, position) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                project_id = excluded.project_id, name = excluded.name,
                color = excluded.color, position = excluded.position
            """,
            (layer.id, project_id, layer.name, layer.color, position),
        )
        if layer.form is None:
            conn.execute("DELETE FROM forms WHERE layer_id = ?", (layer.id,))
            return

        form = layer.form
        conn.execute(
            "DELETE FROM forms WHERE layer_id = ? AND id != ?", (layer.id, form.id)
        )
        conn.execute(
            """
            INSERT INTO forms (id, layer_id) VALUES (?, ?)
            ON CONFLICT(id) DO UPDATE SET layer_id = excluded.layer_id
            """,
            (form.id, layer.id),
        )
        conn.execute("DELETE FROM fields WHERE form_id = ?", (form.id,))
        for field_position, f in enumerate(form.fields):
            conn.execute(
                """
                INSERT INTO fields (form_id, id, position, label, type, required, options_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    form.id,
                    f.id,
                    field_position,
                    f.label,
                    f.type.value,
                    int(f.required),
                    rows.options_to_json(f.options),
                ),
            )

    async def get_project(self, project_id: str) -> Optional[Project]:
        with self._read("get_project") as conn:
            return self._load_project(conn, project_id)

    async def get_projects(self) -> List[Project]:
        with self._read("get_projects") as conn:
            ids = [r["id"] for r in conn.execute("SELECT id FROM projects ORDER BY title, id")]
            projects = [self._load_project(conn, project_id) for project_id in ids]
            return [p for p in projects if p is not None]

    def _load_project(self, conn: sqlite3.Connection, project_id: str) -> Optional[Project]:
        row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        if not row:
            return None

        layers = []
        for layer_row in conn.execute(
            "SELECT * FROM layers WHERE project_id = ? ORDER BY position", (project_id,)
        ).fetchall():
            form = None
            form_row = conn.execute(
                "SELECT * FROM forms WHERE layer_id = ?", (layer_row["id"],)
            ).fetchone()
            if form_row:
                fields = tuple(
                    rows.row_to_field(f)
                    for f in conn.execute(
                        "SELECT * FROM fields WHERE form_id = ? ORDER BY position",
                        (form_row["id"],),
                    ).fetchall()
                )
                form = Form(id=form_row["id"], fields=fields)
            layers.append(
                Layer(
                    id=layer_row["id"],
                    name=layer_row["name"],
                    color=layer_row["color"],
                    form=form,
                )
            )

        sources = tuple(
            OfflineBaseMapSource(url=s["url"])
            for s in conn.execute(
                "SELECT url FROM offline_base_map_sources WHERE project_id = ? ORDER BY position",
                (project_id,),
            ).fetchall()
        )
        return Project(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            layers=tuple(layers),
            offline_base_map_sources=sources,
        )

    async def delete_project(self, project_id: str) -> bool:
        """Delete a project and, by cascade, its layers, features and observations."""
        with self._write("delete_project") as conn:
            cursor = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            deleted = cursor.rowcount > 0
        self.notifier.publish(PROJECTS, FEATURES, OBSERVATIONS)
        return deleted

    # Features and observations

    def _require(
        self, conn: sqlite3.Connection, table: str, row_id: str, entity_id: str
    ) -> sqlite3.Row:
        row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()
        if not row:
            raise ConstraintViolation(
                f"Missing {table} row {row_id} referenced by {entity_id}",
                entity_id=entity_id,
                missing=table,
            )
        return row

    def _upsert_feature(self, conn: sqlite3.Connection, feature: Feature) -> None:
        self._require(conn, "projects", feature.project_id, feature.id)
        layer = self._require(conn, "layers", feature.layer_id, feature.id)
        if layer["project_id"] != feature.project_id:
            raise ConstraintViolation(
                f"Layer {feature.layer_id} does not belong to project {feature.project_id}",
                entity_id=feature.id,
                missing="layers",
            )
        conn.execute(
            """
            INSERT INTO features (id, project_id, layer_id, latitude, longitude, custom_id,
                                  caption, state, created_json, last_modified_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                project_id = excluded.project_id,
                layer_id = excluded.layer_id,
                latitude = excluded.latitude,
                longitude = excluded.longitude,
                custom_id = excluded.custom_id,
                caption = excluded.caption,
                state = excluded.state,
                created_json = excluded.created_json,
                last_modified_json = excluded.last_modified_json
            """,
            (
                feature.id,
                feature.project_id,
                feature.layer_id,
                feature.location.latitude,
                feature.location.longitude,
                feature.custom_id,
                feature.caption,
                feature.state.value,
                rows.audit_to_json(feature.created),
                rows.audit_to_json(feature.last_modified),
            ),
        )

    def _upsert_observation(self, conn: sqlite3.Connection, observation: Observation) -> None:
        self._require(conn, "features", observation.feature_id, observation.id)
        self._require(conn, "forms", observation.form_id, observation.id)
        conn.execute(
            """
            INSERT INTO observations (id, project_id, feature_id, form_id, responses_json,
                                      state, created_json, last_modified_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                project_id = excluded.project_id,
                feature_id = excluded.feature_id,
                form_id = excluded.form_id,
                responses_json = excluded.responses_json,
                state = excluded.state,
                created_json = excluded.created_json,
                last_modified_json = excluded.last_modified_json
            """,
            (
                observation.id,
                observation.project_id,
                observation.feature_id,
                observation.form_id,
                rows.responses_to_json(dict(observation.responses)),
                observation.state.value,
                rows.audit_to_json(observation.created),
                rows.audit_to_json(observation.last_modified),
            ),
        )

    async def insert_or_update_feature(self, feature: Feature) -> None:
        """Upsert a feature by id.

        Raises:
            ConstraintViolation: If the project or layer is absent
        """
        with self._write("insert_or_update_feature") as conn:
            self._upsert_feature(conn, feature)
        self.notifier.publish(FEATURES)

    async def insert_or_update_observation(self, observation: Observation) -> None:
        """Upsert an observation by id.

        Raises:
            ConstraintViolation: If the feature or form is absent
        """
        with self._write("insert_or_update_observation") as conn:
            self._upsert_observation(conn, observation)
        self.notifier.publish(OBSERVATIONS)

    async def get_feature(self, feature_id: str) -> Optional[Feature]:
        """Get a feature by id, including soft-deleted ones."""
        with self._read("get_feature") as conn:
            row = conn.execute("SELECT * FROM features WHERE id = ?", (feature_id,)).fetchone()
            return rows.row_to_feature(row) if row else None

    async def get_features(self, project_id: str) -> List[Feature]:
        """Get the visible (not deleted) features of a project, most recently modified first."""
        with self._read("get_features") as conn:
            cursor = conn.execute(
                "SELECT * FROM features WHERE project_id = ? AND state = ?",
                (project_id, EntityState.DEFAULT.value),
            )
            features = [rows.row_to_feature(r) for r in cursor.fetchall()]
        features.sort(key=lambda f: f.last_modified.client_timestamp, reverse=True)
        return features

    async def get_observation(self, observation_id: str) -> Optional[Observation]:
        with self._read("get_observation") as conn:
            row = conn.execute(
                "SELECT * FROM observations WHERE id = ?", (observation_id,)
            ).fetchone()
            return rows.row_to_observation(row) if row else None

    async def get_observations(
        self, feature_id: str, form_id: Optional[str] = None
    ) -> List[Observation]:
        """Get the visible observations of a feature, optionally for one form."""
        query = "SELECT * FROM observations WHERE feature_id = ? AND state = ?"
        params: List[Any] = [feature_id, EntityState.DEFAULT.value]
        if form_id is not None:
            query += " AND form_id = ?"
            params.append(form_id)

        with self._read("get_observations") as conn:
            observations = [rows.row_to_observation(r) for r in conn.execute(query, params)]
        observations.sort(key=lambda o: o.last_modified.client_timestamp, reverse=True)
        return observations

    async def delete_feature(self, feature_id: str) -> bool:
        """Physically delete a feature and its observations."""
        with self._write("delete_feature") as conn:
            deleted = conn.execute("DELETE FROM features WHERE id = ?", (feature_id,)).rowcount > 0
        if deleted:
            logger.debug("Deleted local feature", extra={"feature_id": feature_id})
            self.notifier.publish(FEATURES, OBSERVATIONS)
        return deleted

    async def delete_observation(self, observation_id: str) -> bool:
        with self._write("delete_observation") as conn:
            deleted = (
                conn.execute("DELETE FROM observations WHERE id = ?", (observation_id,)).rowcount
                > 0
            )
        if deleted:
            logger.debug("Deleted local observation", extra={"observation_id": observation_id})
            self.notifier.publish(OBSERVATIONS)
        return deleted

    # Mutations

    async def apply_and_enqueue(self, mutation: Mutation) -> Mutation:
        """Apply a mutation to local state and append it to the pending queue.

        Both happen in one transaction; on any failure neither the entity
        nor the queue is modified.

        Args:
            mutation: Mutation to apply

        Returns:
            The enqueued mutation, with its queue id assigned

        Raises:
            InvalidMutationType: CREATE on an existing entity, UPDATE/DELETE on
                an absent or deleted one, or an unknown mutation variant
            ConstraintViolation: If a referenced parent or the author is absent
            StoreError: For any other storage failure
        """
        with self._write("apply_and_enqueue") as conn:
            if isinstance(mutation, FeatureMutation):
                self._apply_feature_mutation(conn, mutation)
            elif isinstance(mutation, ObservationMutation):
                self._apply_observation_mutation(conn, mutation)
            else:
                raise InvalidMutationType(f"Unknown mutation: {mutation!r}")
            enqueued = self._enqueue(conn, mutation)

        logger.debug(
            "Applied and enqueued mutation",
            extra={
                "mutation_id": enqueued.id,
                "type": enqueued.type.value,
                "entity_id": enqueued.entity_id,
            },
        )
        self.notifier.publish(
            FEATURES if isinstance(mutation, FeatureMutation) else OBSERVATIONS, MUTATIONS
        )
        return enqueued

    def _apply_feature_mutation(self, conn: sqlite3.Connection, mutation: FeatureMutation) -> None:
        user = self._require_user(conn, mutation.user_id, mutation.feature_id)
        audit = AuditInfo(user=user, client_timestamp=mutation.client_timestamp)
        row = conn.execute(
            "SELECT * FROM features WHERE id = ?", (mutation.feature_id,)
        ).fetchone()

        if mutation.type == MutationType.CREATE:
            if row:
                raise InvalidMutationType(
                    f"Feature already exists: {mutation.feature_id}",
                    mutation_type=mutation.type.value,
                    entity_id=mutation.feature_id,
                )
            if mutation.new_location is None:
                raise InvalidMutationType(
                    "CREATE requires a location",
                    mutation_type=mutation.type.value,
                    entity_id=mutation.feature_id,
                )
            self._upsert_feature(
                conn,
                Feature(
                    id=mutation.feature_id,
                    project_id=mutation.project_id,
                    layer_id=mutation.layer_id,
                    location=mutation.new_location,
                    created=audit,
                    last_modified=audit,
                ),
            )
            return

        if not row or row["state"] == EntityState.DELETED.value:
            raise InvalidMutationType(
                f"Cannot {mutation.type.value} missing feature {mutation.feature_id}",
                mutation_type=mutation.type.value,
                entity_id=mutation.feature_id,
            )

        feature = rows.row_to_feature(row)
        pending = self._load_feature_mutations(conn, "feature_id = ?", (mutation.feature_id,))
        if not is_superseded(mutation, pending):
            feature = replace(feature, last_modified=audit)

        if mutation.type == MutationType.UPDATE:
            if mutation.new_location is not None and not location_set_after(mutation, pending):
                feature = replace(feature, location=mutation.new_location)
        elif mutation.type == MutationType.DELETE:
            logger.debug("Marking feature as deleted", extra={"feature_id": feature.id})
            feature = replace(feature, state=EntityState.DELETED)
        else:
            raise InvalidMutationType(f"Unknown mutation type: {mutation.type}")

        self._upsert_feature(conn, feature)

    def _apply_observation_mutation(
        self, conn: sqlite3.Connection, mutation: ObservationMutation
    ) -> None:
        user = self._require_user(conn, mutation.user_id, mutation.observation_id)
        audit = AuditInfo(user=user, client_timestamp=mutation.client_timestamp)
        row = conn.execute(
            "SELECT * FROM observations WHERE id = ?", (mutation.observation_id,)
        ).fetchone()

        if mutation.type == MutationType.CREATE:
            if row:
                raise InvalidMutationType(
                    f"Observation already exists: {mutation.observation_id}",
                    mutation_type=mutation.type.value,
                    entity_id=mutation.observation_id,
                )
            feature_row = self._require(
                conn, "features", mutation.feature_id, mutation.observation_id
            )
            if feature_row["state"] == EntityState.DELETED.value:
                raise ConstraintViolation(
                    f"Feature {mutation.feature_id} is deleted",
                    entity_id=mutation.observation_id,
                    missing="features",
                )
            self._upsert_observation(
                conn,
                Observation(
                    id=mutation.observation_id,
                    project_id=mutation.project_id,
                    feature_id=mutation.feature_id,
                    form_id=mutation.form_id,
                    responses=apply_response_deltas({}, mutation.response_deltas),
                    created=audit,
                    last_modified=audit,
                ),
            )
            return

        if not row or row["state"] == EntityState.DELETED.value:
            raise InvalidMutationType(
                f"Cannot {mutation.type.value} missing observation {mutation.observation_id}",
                mutation_type=mutation.type.value,
                entity_id=mutation.observation_id,
            )

        observation = rows.row_to_observation(row)
        pending = self._load_observation_mutations(
            conn, "observation_id = ?", (mutation.observation_id,)
        )
        if not is_superseded(mutation, pending):
            observation = replace(observation, last_modified=audit)

        if mutation.type == MutationType.UPDATE:
            # A later pending mutation already wrote these fields.
            shadowed = fields_touched_after(mutation, pending)
            deltas = [d for d in mutation.response_deltas if d.field_id not in shadowed]
            observation = replace(
                observation,
                responses=apply_response_deltas(dict(observation.responses), deltas),
            )
        elif mutation.type == MutationType.DELETE:
            logger.debug("Marking observation as deleted", extra={"observation_id": observation.id})
            observation = replace(observation, state=EntityState.DELETED)
        else:
            raise InvalidMutationType(f"Unknown mutation type: {mutation.type}")

        self._upsert_observation(conn, observation)

    def _enqueue(self, conn: sqlite3.Connection, mutation: Mutation) -> Mutation:
        if isinstance(mutation, FeatureMutation):
            location = mutation.new_location
            cursor = conn.execute(
                """
                INSERT INTO feature_mutations (feature_id, project_id, layer_id, type, user_id,
                                               client_timestamp, new_latitude, new_longitude,
                                               retry_count, last_error, sync_status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    mutation.feature_id,
                    mutation.project_id,
                    mutation.layer_id,
                    mutation.type.value,
                    mutation.user_id,
                    mutation.client_timestamp,
                    location.latitude if location else None,
                    location.longitude if location else None,
                    0,
                    "",
                    SyncStatus.PENDING.value,
                ),
            )
        else:
            cursor = conn.execute(
                """
                INSERT INTO observation_mutations (observation_id, feature_id, project_id,
                                                   layer_id, form_id, type, user_id,
                                                   client_timestamp, response_deltas_json,
                                                   retry_count, last_error, sync_status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    mutation.observation_id,
                    mutation.feature_id,
                    mutation.project_id,
                    mutation.layer_id,
                    mutation.form_id,
                    mutation.type.value,
                    mutation.user_id,
                    mutation.client_timestamp,
                    rows.deltas_to_json(mutation.response_deltas),
                    0,
                    "",
                    SyncStatus.PENDING.value,
                ),
            )
        return replace(
            mutation,
            id=cursor.lastrowid,
            retry_count=0,
            last_error="",
            sync_status=SyncStatus.PENDING,
        )

    def _load_feature_mutations(
        self, conn: sqlite3.Connection, where: str, params: Sequence[Any]
    ) -> List[FeatureMutation]:
        cursor = conn.execute(f"SELECT * FROM feature_mutations WHERE {where}", params)
        return [rows.row_to_feature_mutation(r) for r in cursor.fetchall()]

    def _load_observation_mutations(
        self, conn: sqlite3.Connection, where: str, params: Sequence[Any]
    ) -> List[ObservationMutation]:
        cursor = conn.execute(f"SELECT * FROM observation_mutations WHERE {where}", params)
        return [rows.row_to_observation_mutation(r) for r in cursor.fetchall()]

    async def get_pending_mutations(self, entity_id: str) -> List[Mutation]:
        """Get not-yet-finalized mutations for a feature or observation.

        For a feature id this includes the mutations of its observations.

        Returns:
            Mutations ordered oldest first (client timestamp, then queue id)
        """
        with self._read("get_pending_mutations") as conn:
            mutations: List[Mutation] = []
            mutations.extend(self._load_feature_mutations(conn, "feature_id = ?", (entity_id,)))
            mutations.extend(
                self._load_observation_mutations(
                    conn, "feature_id = ? OR observation_id = ?", (entity_id, entity_id)
                )
            )
        return sort_mutations(mutations)

    async def get_all_pending_mutations(self) -> List[Mutation]:
        """The whole queue, oldest first."""
        with self._read("get_all_pending_mutations") as conn:
            mutations: List[Mutation] = []
            mutations.extend(self._load_feature_mutations(conn, "1 = 1", ()))
            mutations.extend(self._load_observation_mutations(conn, "1 = 1", ()))
        return sort_mutations(mutations)

    async def count_pending_mutations(self) -> int:
        with self._read("count_pending_mutations") as conn:
            features = conn.execute("SELECT COUNT(*) FROM feature_mutations").fetchone()[0]
            observations = conn.execute("SELECT COUNT(*) FROM observation_mutations").fetchone()[0]
        return features + observations

    async def get_rejected_mutations(self) -> List[Mutation]:
        """Mutations the remote store refused; shown to the user as sync errors."""
        status = (SyncStatus.REJECTED.value,)
        with self._read("get_rejected_mutations") as conn:
            mutations: List[Mutation] = []
            mutations.extend(self._load_feature_mutations(conn, "sync_status = ?", status))
            mutations.extend(self._load_observation_mutations(conn, "sync_status = ?", status))
        return sort_mutations(mutations)

    async def update_mutations(self, mutations: Sequence[Mutation]) -> None:
        """Update delivery metadata of queued mutations.

        Only retry_count, last_error and sync_status are written; mutation
        content is never changed.
        """
        with self._write("update_mutations") as conn:
            for mutation in mutations:
                if mutation.id is None:
                    raise ValueError(f"Mutation has not been enqueued: {mutation!r}")
                table = (
                    "feature_mutations"
                    if isinstance(mutation, FeatureMutation)
                    else "observation_mutations"
                )
                conn.execute(
                    f"""
                    UPDATE {table} SET retry_count = ?, last_error = ?, sync_status = ?
                    WHERE id = ?
                    """,
                    (
                        mutation.retry_count,
                        mutation.last_error,
                        mutation.sync_status.value,
                        mutation.id,
                    ),
                )
        self.notifier.publish(MUTATIONS)

    async def finalize_pending_mutations(self, mutations: Sequence[Mutation]) -> int:
        """Remove delivered mutations from the queue.

        For DELETE mutations the underlying entity is physically deleted in
        the same transaction as the queue removal. Finalizing an already
        finalized mutation is a no-op.

        Returns:
            Number of queue entries removed
        """
        removed = 0
        for mutation in sort_mutations(mutations):
            if mutation.id is None:
                raise ValueError(f"Mutation has not been enqueued: {mutation!r}")
            with self._write("finalize_pending_mutations") as conn:
                if isinstance(mutation, FeatureMutation):
                    if mutation.type == MutationType.DELETE:
                        conn.execute("DELETE FROM features WHERE id = ?", (mutation.feature_id,))
                    cursor = conn.execute(
                        "DELETE FROM feature_mutations WHERE id = ?", (mutation.id,)
                    )
                elif isinstance(mutation, ObservationMutation):
                    if mutation.type == MutationType.DELETE:
                        conn.execute(
                            "DELETE FROM observations WHERE id = ?", (mutation.observation_id,)
                        )
                    cursor = conn.execute(
                        "DELETE FROM observation_mutations WHERE id = ?", (mutation.id,)
                    )
                else:
                    raise InvalidMutationType(f"Unknown mutation: {mutation!r}")
                removed += cursor.rowcount

        if removed:
            self.notifier.publish(MUTATIONS, FEATURES, OBSERVATIONS)
        return removed

    # Merge

    async def merge_feature(self, remote: Feature) -> Feature:
        """Merge a remote feature snapshot with pending local mutations.

        The remote snapshot is the baseline; pending mutations are replayed
        on top of it oldest first. With nothing pending it is adopted as is.

        Returns:
            The feature as written locally
        """
        with self._write("merge_feature") as conn:
            pending = self._load_feature_mutations(conn, "feature_id = ?", (remote.id,))
            merged = remote
            if pending:
                last = sort_mutations(pending)[-1]
                user = self._require_user(conn, last.user_id, remote.id)
                merged = apply_feature_mutations(remote, pending, user)
            self._upsert_feature(conn, merged)
        self.notifier.publish(FEATURES)
        return merged

    async def merge_observation(self, remote: Observation) -> Observation:
        """Merge a remote observation snapshot with pending local mutations.

        Responses merge field by field: each field keeps the value of the
        pending mutation that last touched it, or the remote value otherwise.

        Returns:
            The observation as written locally
        """
        with self._write("merge_observation") as conn:
            pending = self._load_observation_mutations(
                conn, "observation_id = ?", (remote.id,)
            )
            merged = remote
            if pending:
                last = sort_mutations(pending)[-1]
                user = self._require_user(conn, last.user_id, remote.id)
                merged = apply_observation_mutations(remote, pending, user)
            self._upsert_observation(conn, merged)
        self.notifier.publish(OBSERVATIONS)
        return merged

    # Tile sources

    async def insert_or_update_tile_source(self, tile_source: TileSource) -> None:
        with self._write("insert_or_update_tile_source") as conn:
            self._upsert_tile_source(conn, tile_source)
        self.notifier.publish(TILE_SOURCES)

    def _upsert_tile_source(self, conn: sqlite3.Connection, tile_source: TileSource) -> None:
        conn.execute(
            """
            INSERT INTO tile_sources (id, url, path, south, west, north, east, state, last_error)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                url = excluded.url, path = excluded.path,
                south = excluded.south, west = excluded.west,
                north = excluded.north, east = excluded.east,
                state = excluded.state, last_error = excluded.last_error
            """,
            (
                tile_source.id,
                tile_source.url,
                tile_source.path,
                *rows.bounds_params(tile_source.bounds),
                tile_source.state.value,
                tile_source.last_error,
            ),
        )

    async def get_tile_source(self, tile_source_id: str) -> Optional[TileSource]:
        with self._read("get_tile_source") as conn:
            row = conn.execute(
                "SELECT * FROM tile_sources WHERE id = ?", (tile_source_id,)
            ).fetchone()
            return rows.row_to_tile_source(row) if row else None

    async def get_tile_sources(self) -> List[TileSource]:
        with self._read("get_tile_sources") as conn:
            cursor = conn.execute("SELECT * FROM tile_sources ORDER BY id")
            return [rows.row_to_tile_source(r) for r in cursor.fetchall()]

    async def get_pending_tile_sources(self) -> List[TileSource]:
        """Tile sources waiting for download, including ones left IN_PROGRESS by a dead worker."""
        with self._read("get_pending_tile_sources") as conn:
            cursor = conn.execute(
                "SELECT * FROM tile_sources WHERE state IN (?, ?) ORDER BY id",
                (TileSourceState.PENDING.value, TileSourceState.IN_PROGRESS.value),
            )
            return [rows.row_to_tile_source(r) for r in cursor.fetchall()]

    async def update_tile_source_state(
        self,
        tile_source_id: str,
        state: TileSourceState,
        error: str = "",
    ) -> TileSource:
        """Move a tile source to a new download state.

        Raises:
            NotFoundError: If the tile source doesn't exist
            InvalidStateTransition: If the transition is not allowed
        """
        with self._write("update_tile_source_state") as conn:
            row = conn.execute(
                "SELECT * FROM tile_sources WHERE id = ?", (tile_source_id,)
            ).fetchone()
            if not row:
                raise NotFoundError("TileSource", tile_source_id)
            current = rows.row_to_tile_source(row)
            if not can_transition_tile(current.state, state):
                raise InvalidStateTransition(tile_source_id, current.state.value, state.value)
            updated = replace(current, state=state, last_error=error)
            self._upsert_tile_source(conn, updated)
        self.notifier.publish(TILE_SOURCES)
        return updated

    async def delete_tile_source(self, tile_source_id: str) -> bool:
        with self._write("delete_tile_source") as conn:
            deleted = (
                conn.execute("DELETE FROM tile_sources WHERE id = ?", (tile_source_id,)).rowcount
                > 0
            )
        self.notifier.publish(TILE_SOURCES)
        return deleted

    # Offline areas

    def _upsert_offline_area(self, conn: sqlite3.Connection, area: OfflineArea) -> None:
        conn.execute(
            """
            INSERT INTO offline_areas (id, name, south, west, north, east, state)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                south = excluded.south, west = excluded.west,
                north = excluded.north, east = excluded.east,
                state = excluded.state
            """,
            (area.id, area.name, *rows.bounds_params(area.bounds), area.state.value),
        )

    async def insert_or_update_offline_area(self, area: OfflineArea) -> None:
        with self._write("insert_or_update_offline_area") as conn:
            self._upsert_offline_area(conn, area)
        self.notifier.publish(OFFLINE_AREAS)

    async def get_offline_area(self, area_id: str) -> Optional[OfflineArea]:
        with self._read("get_offline_area") as conn:
            row = conn.execute("SELECT * FROM offline_areas WHERE id = ?", (area_id,)).fetchone()
            return rows.row_to_offline_area(row) if row else None

    async def get_offline_areas(self) -> List[OfflineArea]:
        with self._read("get_offline_areas") as conn:
            cursor = conn.execute("SELECT * FROM offline_areas ORDER BY name, id")
            return [rows.row_to_offline_area(r) for r in cursor.fetchall()]

    async def update_offline_area_state(self, area_id: str, state: OfflineAreaState) -> OfflineArea:
        """Move an offline area to a new state.

        Raises:
            NotFoundError: If the area doesn't exist
            InvalidStateTransition: If the transition is not allowed
        """
        with self._write("update_offline_area_state") as conn:
            row = conn.execute("SELECT * FROM offline_areas WHERE id = ?", (area_id,)).fetchone()
            if not row:
                raise NotFoundError("OfflineArea", area_id)
            current = rows.row_to_offline_area(row)
            if not can_transition_area(current.state, state):
                raise InvalidStateTransition(area_id, current.state.value, state.value)
            updated = replace(current, state=state)
            self._upsert_offline_area(conn, updated)
        self.notifier.publish(OFFLINE_AREAS)
        return updated

    async def enqueue_area_download(
        self,
        area: OfflineArea,
        tile_sources: Sequence[TileSource],
    ) -> OfflineArea:
        """Persist an area as IN_PROGRESS together with the tiles it needs.

        Tiles already known keep their state, except FAILED ones which go
        back to PENDING for another attempt.

        Returns:
            The area as stored
        """
        with self._write("enqueue_area_download") as conn:
            for tile_source in tile_sources:
                row = conn.execute(
                    "SELECT * FROM tile_sources WHERE id = ?", (tile_source.id,)
                ).fetchone()
                if not row:
                    self._upsert_tile_source(
                        conn, replace(tile_source, state=TileSourceState.PENDING, last_error="")
                    )
                    continue
                existing = rows.row_to_tile_source(row)
                if existing.state == TileSourceState.FAILED:
                    self._upsert_tile_source(
                        conn, replace(existing, state=TileSourceState.PENDING, last_error="")
                    )

            row = conn.execute("SELECT * FROM offline_areas WHERE id = ?", (area.id,)).fetchone()
            current_state = OfflineAreaState(row["state"]) if row else area.state
            if not can_transition_area(current_state, OfflineAreaState.IN_PROGRESS):
                raise InvalidStateTransition(
                    area.id, current_state.value, OfflineAreaState.IN_PROGRESS.value
                )
            stored = replace(area, state=OfflineAreaState.IN_PROGRESS)
            self._upsert_offline_area(conn, stored)

        self.notifier.publish(TILE_SOURCES, OFFLINE_AREAS)
        return stored

    async def delete_offline_area_and_release(self, area_id: str) -> List[TileSource]:
        """Delete an area and the tile sources no other area still needs.

        Tile membership is recomputed from bounds intersection at delete
        time; a tile intersecting any remaining area is kept.

        Returns:
            Tile sources removed from the store (their files are the caller's to delete)

        Raises:
            NotFoundError: If the area doesn't exist
        """
        with self._write("delete_offline_area") as conn:
            row = conn.execute("SELECT * FROM offline_areas WHERE id = ?", (area_id,)).fetchone()
            if not row:
                raise NotFoundError("OfflineArea", area_id)
            area = rows.row_to_offline_area(row)
            conn.execute("DELETE FROM offline_areas WHERE id = ?", (area_id,))

            remaining = [
                rows.row_to_offline_area(r)
                for r in conn.execute("SELECT * FROM offline_areas").fetchall()
            ]
            released = []
            for tile_row in conn.execute("SELECT * FROM tile_sources").fetchall():
                tile = rows.row_to_tile_source(tile_row)
                if not tile.bounds.intersects(area.bounds):
                    continue
                if any(tile.bounds.intersects(other.bounds) for other in remaining):
                    continue
                released.append(tile)

            for tile in released:
                conn.execute("DELETE FROM tile_sources WHERE id = ?", (tile.id,))

        logger.info(
            "Deleted offline area",
            extra={"area_id": area_id, "released_tiles": [t.id for t in released]},
        )
        self.notifier.publish(OFFLINE_AREAS, TILE_SOURCES)
        return released

    # Streaming reads

    async def _once_and_stream(
        self,
        tables: Sequence[str],
        query: Callable[[], Awaitable[T]],
    ) -> AsyncIterator[T]:
        # Subscribe before the first read so no change slips in between.
        subscription = self.notifier.subscribe(*tables)
        try:
            yield await query()
            while True:
                await subscription.wait()
                yield await query()
        finally:
            subscription.close()

    def features_once_and_stream(self, project_id: str) -> AsyncIterator[List[Feature]]:
        """Visible features of a project now, then after every change."""
        return self._once_and_stream([FEATURES], lambda: self.get_features(project_id))

    def observations_once_and_stream(self, feature_id: str) -> AsyncIterator[List[Observation]]:
        return self._once_and_stream([OBSERVATIONS], lambda: self.get_observations(feature_id))

    def tile_sources_once_and_stream(self) -> AsyncIterator[List[TileSource]]:
        return self._once_and_stream([TILE_SOURCES], self.get_tile_sources)

    def offline_areas_once_and_stream(self) -> AsyncIterator[List[OfflineArea]]:
        return self._once_and_stream([OFFLINE_AREAS], self.get_offline_areas)

    def rejected_mutations_once_and_stream(self) -> AsyncIterator[List[Mutation]]:
        return self._once_and_stream([MUTATIONS], self.get_rejected_mutations)
