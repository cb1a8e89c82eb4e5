"""SQLite database operations for the engine."""
import sqlite3
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any
from contextlib import contextmanager

from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _scene_row(row: sqlite3.Row) -> Dict[str, Any]:
    scene = dict(row)
    scene['temporal_hints'] = json.loads(scene['temporal_hints'] or '{}')
    scene['events'] = json.loads(scene['events'] or '[]')
    return scene


class Database:
    """Manages SQLite database operations."""

    def __init__(self, db_path: Path = config.DB_PATH):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._initialize_schema()

    def _initialize_schema(self):
        """Create tables if they don't exist."""
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, 'r') as f:
            schema_sql = f.read()

        with self._get_connection() as conn:
            conn.executescript(schema_sql)
            conn.commit()

        logger.debug(f"Database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def insert_document(self, owner_id: str, title: str, file_path: str) -> str:
        """Register a new document in PENDING state.

        Args:
            owner_id: Owning user id
            title: Document title
            file_path: Path to the source file

        Returns:
            Document UUID
        """
        document_id = str(uuid.uuid4())
        now = _now()

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO documents (id, owner_id, title, file_path, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, 'PENDING', ?, ?)
                """,
                (document_id, owner_id, title, file_path, now, now)
            )
            conn.commit()

        logger.info(f"Registered document: {title} (ID: {document_id})")
        return document_id

    def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ?",
                (document_id,)
            ).fetchone()
            return dict(row) if row else None

    def list_documents(self, owner_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            if owner_id:
                rows = conn.execute(
                    "SELECT * FROM documents WHERE owner_id = ? ORDER BY created_at DESC",
                    (owner_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM documents ORDER BY created_at DESC"
                ).fetchall()
            return [dict(row) for row in rows]

    def update_document_status(
        self,
        document_id: str,
        status: str,
        error: Optional[str] = None
    ) -> None:
        """Set document lifecycle status; error is cleared unless given."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE documents SET status = ?, error = ?, updated_at = ? WHERE id = ?",
                (status, error, _now(), document_id)
            )
            conn.commit()

    def update_document_page_count(self, document_id: str, page_count: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE documents SET page_count = ?, updated_at = ? WHERE id = ?",
                (page_count, _now(), document_id)
            )
            conn.commit()

    def delete_document(self, document_id: str) -> None:
        """Delete a document and every relational record derived from it."""
        with self._get_connection() as conn:
            conn.execute(
                """
                DELETE FROM scene_entities WHERE snippet_scene_id IN
                    (SELECT id FROM snippet_scenes WHERE document_id = ?)
                """,
                (document_id,)
            )
            conn.execute("DELETE FROM snippet_scenes WHERE document_id = ?", (document_id,))
            conn.execute(
                """
                DELETE FROM character_traits WHERE character_id IN
                    (SELECT id FROM characters WHERE document_id = ?)
                """,
                (document_id,)
            )
            conn.execute("DELETE FROM characters WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM ingestion_jobs WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM scenes WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM chapters WHERE document_id = ?", (document_id,))
            conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            conn.commit()

        logger.info(f"Deleted relational records for document {document_id}")

    # ------------------------------------------------------------------
    # Chapters, scenes, chunks
    # ------------------------------------------------------------------

    def upsert_chapter(
        self,
        document_id: str,
        chapter_index: int,
        title: str,
        start_char: int,
        end_char: int
    ) -> str:
        """Insert a chapter or update the existing one with the same index.

        Returns:
            Chapter id (stable across re-ingestion)
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO chapters (id, document_id, chapter_index, title, start_char, end_char)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(document_id, chapter_index) DO UPDATE SET
                    title = excluded.title,
                    start_char = excluded.start_char,
                    end_char = excluded.end_char
                """,
                (str(uuid.uuid4()), document_id, chapter_index, title, start_char, end_char)
            )
            row = conn.execute(
                "SELECT id FROM chapters WHERE document_id = ? AND chapter_index = ?",
                (document_id, chapter_index)
            ).fetchone()
            conn.commit()
            return row['id']

    def get_chapters(self, document_id: str) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM chapters WHERE document_id = ? ORDER BY chapter_index",
                (document_id,)
            ).fetchall()
            return [dict(row) for row in rows]

    def upsert_scene(self, scene: Dict[str, Any]) -> str:
        """Insert a scene keyed by (document, global scene index).

        Args:
            scene: Scene dictionary (see Scene.to_dict)

        Returns:
            Scene id (stable across re-ingestion)
        """
        params = dict(scene)
        params['id'] = str(uuid.uuid4())
        params['temporal_hints'] = json.dumps(scene.get('temporal_hints') or {})
        params['events'] = json.dumps(scene.get('events') or [])

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO scenes (
                    id, document_id, chapter_id, chapter_index, local_index, global_scene_index,
                    title, summary, pov, location, temporal_hints, events, start_char, end_char
                )
                VALUES (
                    :id, :document_id, :chapter_id, :chapter_index, :local_index, :global_scene_index,
                    :title, :summary, :pov, :location, :temporal_hints, :events, :start_char, :end_char
                )
                ON CONFLICT(document_id, global_scene_index) DO UPDATE SET
                    chapter_id = excluded.chapter_id,
                    chapter_index = excluded.chapter_index,
                    local_index = excluded.local_index,
                    title = excluded.title,
                    summary = excluded.summary,
                    pov = excluded.pov,
                    location = excluded.location,
                    temporal_hints = excluded.temporal_hints,
                    events = excluded.events,
                    start_char = excluded.start_char,
                    end_char = excluded.end_char
                """,
                params
            )
            row = conn.execute(
                "SELECT id FROM scenes WHERE document_id = ? AND global_scene_index = ?",
                (scene['document_id'], scene['global_scene_index'])
            ).fetchone()
            conn.commit()
            return row['id']

    def get_scenes(self, document_id: str) -> List[Dict[str, Any]]:
        """Retrieve all scenes of a document in document order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scenes WHERE document_id = ? ORDER BY global_scene_index",
                (document_id,)
            ).fetchall()
            return [_scene_row(row) for row in rows]

    def get_last_scene_index(self, document_id: str) -> Optional[int]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT MAX(global_scene_index) AS last FROM scenes WHERE document_id = ?",
                (document_id,)
            ).fetchone()
            return row['last'] if row else None

    def insert_chunks(self, chunks: List[Dict[str, Any]]) -> None:
        """Bulk insert chunks, replacing rows with the same id.

        Args:
            chunks: List of chunk dictionaries
        """
        if not chunks:
            return

        with self._get_connection() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO chunks (
                    id, document_id, chapter_index, scene_id, scene_index, global_scene_index,
                    chunk_index, text, token_count, start_char, end_char
                )
                VALUES (
                    :id, :document_id, :chapter_index, :scene_id, :scene_index, :global_scene_index,
                    :chunk_index, :text, :token_count, :start_char, :end_char
                )
                """,
                chunks
            )
            conn.commit()

        logger.debug(f"Inserted {len(chunks)} chunks")

    def get_chunks(self, document_id: str) -> List[Dict[str, Any]]:
        """Retrieve all chunks for a document in document order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE document_id = ? ORDER BY chunk_index",
                (document_id,)
            ).fetchall()
            return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Labeling jobs
    # ------------------------------------------------------------------

    def insert_job(self, document_id: str) -> Dict[str, Any]:
        job_id = str(uuid.uuid4())
        now = _now()
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO ingestion_jobs (id, document_id, status, created_at, updated_at)
                VALUES (?, ?, 'queued', ?, ?)
                """,
                (job_id, document_id, now, now)
            )
            conn.commit()
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM ingestion_jobs WHERE id = ?",
                (job_id,)
            ).fetchone()
            return dict(row) if row else None

    def get_oldest_queued_job(self) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM ingestion_jobs WHERE status = 'queued'
                ORDER BY created_at ASC, rowid ASC LIMIT 1
                """
            ).fetchone()
            return dict(row) if row else None

    def list_jobs(self, document_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            if document_id:
                rows = conn.execute(
                    "SELECT * FROM ingestion_jobs WHERE document_id = ? ORDER BY created_at",
                    (document_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM ingestion_jobs ORDER BY created_at"
                ).fetchall()
            return [dict(row) for row in rows]

    def update_job(
        self,
        job_id: str,
        status: str,
        error: Optional[str] = None,
        message: Optional[str] = None
    ) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE ingestion_jobs SET status = ?, error = ?, message = ?, updated_at = ?
                WHERE id = ?
                """,
                (status, error, message, _now(), job_id)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Settings and provider configuration
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM global_settings WHERE key = ?",
                (key,)
            ).fetchone()
            return row['value'] if row else None

    def set_setting(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO global_settings (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value)
            )
            conn.commit()

    def get_task_config(self, task: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM task_configs WHERE task = ?",
                (task,)
            ).fetchone()
            return dict(row) if row else None

    def upsert_task_config(
        self,
        task: str,
        provider: str,
        model: str,
        budget_enabled: bool,
        daily_limit: int
    ) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO task_configs (task, provider, model, budget_enabled, daily_limit)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(task) DO UPDATE SET
                    provider = excluded.provider,
                    model = excluded.model,
                    budget_enabled = excluded.budget_enabled,
                    daily_limit = excluded.daily_limit
                """,
                (task, provider, model, int(budget_enabled), daily_limit)
            )
            conn.commit()

    def get_model_config(self, model: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM model_configs WHERE model = ?",
                (model,)
            ).fetchone()
            return dict(row) if row else None

    def upsert_model_config(self, model: str, budget_enabled: bool, daily_limit: int) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO model_configs (model, budget_enabled, daily_limit)
                VALUES (?, ?, ?)
                ON CONFLICT(model) DO UPDATE SET
                    budget_enabled = excluded.budget_enabled,
                    daily_limit = excluded.daily_limit
                """,
                (model, int(budget_enabled), daily_limit)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Usage counters
    # ------------------------------------------------------------------

    def increment_task_usage(
        self,
        date: str,
        task: str,
        requests: int,
        input_tokens: int = 0,
        output_tokens: int = 0
    ) -> None:
        """Atomically add to the (date, task) counters."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO daily_task_usage (date, task, requests, input_tokens, output_tokens)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(date, task) DO UPDATE SET
                    requests = requests + excluded.requests,
                    input_tokens = input_tokens + excluded.input_tokens,
                    output_tokens = output_tokens + excluded.output_tokens
                """,
                (date, task, requests, input_tokens, output_tokens)
            )
            conn.commit()

    def increment_model_usage(
        self,
        date: str,
        provider: str,
        model: str,
        requests: int,
        input_tokens: int = 0,
        output_tokens: int = 0
    ) -> None:
        """Atomically add to the (date, provider, model) counters."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO daily_model_usage (date, provider, model, requests, input_tokens, output_tokens)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(date, provider, model) DO UPDATE SET
                    requests = requests + excluded.requests,
                    input_tokens = input_tokens + excluded.input_tokens,
                    output_tokens = output_tokens + excluded.output_tokens
                """,
                (date, provider, model, requests, input_tokens, output_tokens)
            )
            conn.commit()

    def get_task_requests(self, date: str, task: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT requests FROM daily_task_usage WHERE date = ? AND task = ?",
                (date, task)
            ).fetchone()
            return row['requests'] if row else 0

    def get_model_requests(self, date: str, model: str) -> int:
        """Requests for a model string summed over every provider."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COALESCE(SUM(requests), 0) AS total FROM daily_model_usage WHERE date = ? AND model = ?",
                (date, model)
            ).fetchone()
            return row['total']

    def get_usage_for_date(self, date: str) -> Dict[str, List[Dict[str, Any]]]:
        with self._get_connection() as conn:
            tasks = conn.execute(
                "SELECT * FROM daily_task_usage WHERE date = ? ORDER BY task",
                (date,)
            ).fetchall()
            models = conn.execute(
                "SELECT * FROM daily_model_usage WHERE date = ? ORDER BY provider, model",
                (date,)
            ).fetchall()
            return {
                'tasks': [dict(row) for row in tasks],
                'models': [dict(row) for row in models],
            }

    # ------------------------------------------------------------------
    # Aggregation records
    # ------------------------------------------------------------------

    def insert_character(
        self,
        document_id: str,
        name: str,
        role: Optional[str],
        mention_count: int,
        traits: List[Dict[str, str]]
    ) -> str:
        """Insert a seeded character together with its traits.

        Returns:
            Character UUID
        """
        character_id = str(uuid.uuid4())
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO characters (id, document_id, name, role, mention_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (character_id, document_id, name, role, mention_count, _now())
            )
            conn.executemany(
                """
                INSERT INTO character_traits (id, character_id, trait_type, description)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (str(uuid.uuid4()), character_id, t['type'], t['description'])
                    for t in traits
                ]
            )
            conn.commit()
        return character_id

    def get_characters(self, document_id: str) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM characters WHERE document_id = ? ORDER BY mention_count DESC",
                (document_id,)
            ).fetchall()
            characters = []
            for row in rows:
                character = dict(row)
                traits = conn.execute(
                    "SELECT trait_type, description FROM character_traits WHERE character_id = ?",
                    (character['id'],)
                ).fetchall()
                character['traits'] = [dict(t) for t in traits]
                characters.append(character)
            return characters

    def insert_snippet_scene(
        self,
        document_id: str,
        block_index: int,
        title: str,
        summary: str,
        start_position: int,
        end_position: int,
        entities: List[Dict[str, Any]]
    ) -> str:
        """Insert a coarse scene built from a block of snippets.

        Args:
            entities: Dicts with name, entity_type and optional character_id
        """
        scene_id = str(uuid.uuid4())
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO snippet_scenes (id, document_id, block_index, title, summary, start_position, end_position)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (scene_id, document_id, block_index, title, summary, start_position, end_position)
            )
            conn.executemany(
                """
                INSERT INTO scene_entities (id, snippet_scene_id, name, entity_type, character_id)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (str(uuid.uuid4()), scene_id, e['name'], e['entity_type'], e.get('character_id'))
                    for e in entities
                ]
            )
            conn.commit()
        return scene_id

    def get_snippet_scenes(self, document_id: str) -> List[Dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM snippet_scenes WHERE document_id = ? ORDER BY block_index",
                (document_id,)
            ).fetchall()
            scenes = []
            for row in rows:
                scene = dict(row)
                entities = conn.execute(
                    "SELECT name, entity_type, character_id FROM scene_entities WHERE snippet_scene_id = ?",
                    (scene['id'],)
                ).fetchall()
                scene['entities'] = [dict(e) for e in entities]
                scenes.append(scene)
            return scenes

    def clear_aggregation(self, document_id: str) -> None:
        """Remove seeded characters and snippet scenes before a new sweep."""
        with self._get_connection() as conn:
            conn.execute(
                """
                DELETE FROM scene_entities WHERE snippet_scene_id IN
                    (SELECT id FROM snippet_scenes WHERE document_id = ?)
                """,
                (document_id,)
            )
            conn.execute("DELETE FROM snippet_scenes WHERE document_id = ?", (document_id,))
            conn.execute(
                """
                DELETE FROM character_traits WHERE character_id IN
                    (SELECT id FROM characters WHERE document_id = ?)
                """,
                (document_id,)
            )
            conn.execute("DELETE FROM characters WHERE document_id = ?", (document_id,))
            conn.commit()
