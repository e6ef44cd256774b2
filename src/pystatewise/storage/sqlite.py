"""SQLite-backed storage implementation for pystatewise.

Design Pattern: Adapter Pattern
SqliteWorkflowStore and SqliteJobQueue adapt a SQLite database to the
WorkflowStore and JobQueue interfaces.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- Autocommit: every write is one statement, so every write is atomic
- Ledger claims use a UNIQUE constraint with ON CONFLICT DO NOTHING
- Job claims use UPDATE ... RETURNING on a sub-select
- INTEGER timestamps (milliseconds since the epoch, UTC)
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

import aiosqlite

from pystatewise.models import (
    Action,
    ActionType,
    Channel,
    EntityContext,
    EventType,
    ExecutionEvent,
    Job,
    JobStatus,
    MessageTemplate,
    OccurrenceStatus,
    PendingJob,
    Priority,
    State,
    StateGraph,
    StateType,
    Task,
    Transition,
    Trigger,
    TriggerType,
    entity_from_record,
)
from pystatewise.storage.base import STALE_REASON, JobQueue, StorageError, WorkflowStore


def _to_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def _from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=UTC)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"cannot serialize {type(value).__name__}")


def _dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, ensure_ascii=False)


class _SqliteAdapter:
    """Connection lifecycle shared by the SQLite adapters.

    After __init__, the instance is not yet usable. Call connect() first.
    """

    def __init__(self, db_path: str):
        """Initialize the adapter (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

    @classmethod
    async def in_memory(cls):
        """
        Create a connected in-memory instance for testing.

        Example:
            store = await SqliteWorkflowStore.in_memory()
            # Ready to use immediately
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return f"{type(self).__name__}(in-memory)"
        return f"{type(self).__name__}({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Pattern: Template Method
        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes (subclass hook)
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit mode
        )

        # In-memory databases return "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()

        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        await self._create_schema()

    async def _create_schema(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        """Close the connection.

        Explicit resource cleanup, not relying on GC.
        """
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _check_connected(self) -> None:
        """Guard clause: Ensure connection is open."""
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    async def _execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        self._check_connected()
        try:
            return await self._connection.execute(sql, params)
        except aiosqlite.Error as e:
            raise StorageError(f"SQLite operation failed: {e}") from e

    async def _fetchone(self, sql: str, params: tuple = ()) -> tuple | None:
        cursor = await self._execute(sql, params)
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        cursor = await self._execute(sql, params)
        rows = await cursor.fetchall()
        await cursor.close()
        return list(rows)

    async def _write(self, sql: str, params: tuple = ()) -> int:
        """Run one write statement and return the affected row count."""
        cursor = await self._execute(sql, params)
        count = cursor.rowcount
        await cursor.close()
        return count


class SqliteWorkflowStore(_SqliteAdapter, WorkflowStore):
    """SQLite-backed workflow data store.

    Usage:
        store = SqliteWorkflowStore("statewise.db")
        await store.connect()
        try:
            graph = await store.get_graph("org-1", "budget")
        finally:
            await store.close()
    """

    async def _create_schema(self) -> None:
        """Create tables and indexes.

        Schema design:
        - graphs keep states and transitions as a JSON definition
        - entities keep type-specific fields as a JSON document, with
          current_state in its own column for compare-and-set
        - pending_jobs enforces one row per trigger occurrence per entity
        """
        await self._connection.executescript("""
            CREATE TABLE IF NOT EXISTS workflow_graphs (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                module TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                is_active INTEGER NOT NULL DEFAULT 1,
                definition TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_graphs_org_type
                ON workflow_graphs(organization_id, entity_type, is_active);

            CREATE TABLE IF NOT EXISTS workflow_triggers (
                id TEXT PRIMARY KEY,
                graph_id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                state_id TEXT,
                transition_id TEXT,
                time_offset_minutes INTEGER,
                time_field TEXT,
                recurring_cron TEXT,
                is_active INTEGER NOT NULL DEFAULT 1
            );
            CREATE INDEX IF NOT EXISTS idx_triggers_graph
                ON workflow_triggers(organization_id, graph_id);

            CREATE TABLE IF NOT EXISTS workflow_actions (
                id TEXT PRIMARY KEY,
                trigger_id TEXT NOT NULL,
                action_type TEXT NOT NULL,
                action_order INTEGER NOT NULL DEFAULT 0,
                template_id TEXT,
                action_config TEXT NOT NULL DEFAULT '{}',
                is_active INTEGER NOT NULL DEFAULT 1
            );
            CREATE INDEX IF NOT EXISTS idx_actions_trigger
                ON workflow_actions(trigger_id, action_order);

            CREATE TABLE IF NOT EXISTS message_templates (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                channel TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                subject TEXT,
                body TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS entities (
                organization_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                current_state TEXT,
                data TEXT NOT NULL,
                PRIMARY KEY (organization_id, entity_type, entity_id)
            );

            CREATE TABLE IF NOT EXISTS pending_jobs (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                trigger_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                occurrence_key TEXT NOT NULL,
                scheduled_for INTEGER NOT NULL,
                status TEXT CHECK( status IN (
                    'CLAIMED','FIRED','CANCELLED','FAILED'
                ) ) NOT NULL,
                created_at INTEGER NOT NULL,
                fired_at INTEGER,
                last_error TEXT,
                UNIQUE (trigger_id, entity_id, occurrence_key)
            );
            CREATE INDEX IF NOT EXISTS idx_pending_jobs_entity
                ON pending_jobs(organization_id, entity_type, entity_id, status);
            CREATE INDEX IF NOT EXISTS idx_pending_jobs_created
                ON pending_jobs(created_at);

            CREATE TABLE IF NOT EXISTS workflow_execution_log (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                graph_id TEXT,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                from_state TEXT,
                to_state TEXT,
                trigger_id TEXT,
                action_id TEXT,
                details TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_execution_log_entity
                ON workflow_execution_log(organization_id, entity_type, entity_id, created_at);

            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                assignee_id TEXT,
                due_at INTEGER,
                source_action_id TEXT,
                created_at INTEGER NOT NULL
            );
        """)

    # ========================================================================
    # Configuration reads
    # ========================================================================

    _GRAPH_COLUMNS = "id, organization_id, module, entity_type, name, is_active, definition"

    async def get_graph(self, organization_id: str, entity_type: str) -> StateGraph | None:
        row = await self._fetchone(
            f"""
            SELECT {self._GRAPH_COLUMNS} FROM workflow_graphs
            WHERE organization_id = ? AND entity_type = ? AND is_active = 1
            LIMIT 1
            """,
            (organization_id, entity_type),
        )
        return self._row_to_graph(row) if row else None

    async def get_graph_by_id(self, organization_id: str, graph_id: str) -> StateGraph | None:
        row = await self._fetchone(
            f"""
            SELECT {self._GRAPH_COLUMNS} FROM workflow_graphs
            WHERE organization_id = ? AND id = ?
            """,
            (organization_id, graph_id),
        )
        return self._row_to_graph(row) if row else None

    _TRIGGER_COLUMNS = (
        "id, graph_id, organization_id, trigger_type, state_id, transition_id, "
        "time_offset_minutes, time_field, recurring_cron, is_active"
    )

    async def list_triggers(self, organization_id: str, graph_id: str) -> list[Trigger]:
        rows = await self._fetchall(
            f"""
            SELECT {self._TRIGGER_COLUMNS} FROM workflow_triggers
            WHERE organization_id = ? AND graph_id = ? AND is_active = 1
            ORDER BY id
            """,
            (organization_id, graph_id),
        )
        return [self._row_to_trigger(r) for r in rows]

    async def list_time_triggers(self) -> list[Trigger]:
        rows = await self._fetchall(
            f"""
            SELECT {self._TRIGGER_COLUMNS} FROM workflow_triggers
            WHERE is_active = 1
              AND trigger_type IN ('time_before', 'time_after', 'recurring')
            ORDER BY organization_id, id
            """
        )
        return [self._row_to_trigger(r) for r in rows]

    async def get_trigger(self, organization_id: str, trigger_id: str) -> Trigger | None:
        row = await self._fetchone(
            f"""
            SELECT {self._TRIGGER_COLUMNS} FROM workflow_triggers
            WHERE organization_id = ? AND id = ?
            """,
            (organization_id, trigger_id),
        )
        return self._row_to_trigger(row) if row else None

    _ACTION_COLUMNS = (
        "a.id, a.trigger_id, a.action_type, a.action_order, a.template_id, "
        "a.action_config, a.is_active"
    )

    async def list_actions(self, trigger_id: str) -> list[Action]:
        rows = await self._fetchall(
            f"""
            SELECT {self._ACTION_COLUMNS} FROM workflow_actions a
            WHERE a.trigger_id = ? AND a.is_active = 1
            ORDER BY a.action_order ASC, a.id ASC
            """,
            (trigger_id,),
        )
        return [self._row_to_action(r) for r in rows]

    async def get_action(self, organization_id: str, action_id: str) -> Action | None:
        row = await self._fetchone(
            f"""
            SELECT {self._ACTION_COLUMNS} FROM workflow_actions a
            JOIN workflow_triggers t ON t.id = a.trigger_id
            WHERE a.id = ? AND t.organization_id = ?
            """,
            (action_id, organization_id),
        )
        return self._row_to_action(row) if row else None

    async def get_template(self, organization_id: str, template_id: str) -> MessageTemplate | None:
        row = await self._fetchone(
            """
            SELECT id, organization_id, channel, name, subject, body, is_active
            FROM message_templates
            WHERE organization_id = ? AND id = ?
            """,
            (organization_id, template_id),
        )
        if row is None:
            return None
        return MessageTemplate(
            id=row[0],
            organization_id=row[1],
            channel=Channel(row[2]),
            name=row[3],
            subject=row[4],
            body=row[5],
            is_active=bool(row[6]),
        )

    # ========================================================================
    # Entities
    # ========================================================================

    async def get_entity(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> EntityContext | None:
        row = await self._fetchone(
            """
            SELECT entity_type, current_state, data FROM entities
            WHERE organization_id = ? AND entity_type = ? AND entity_id = ?
            """,
            (organization_id, entity_type, entity_id),
        )
        return self._row_to_entity(row) if row else None

    async def list_entities(self, organization_id: str, entity_type: str) -> list[EntityContext]:
        rows = await self._fetchall(
            """
            SELECT entity_type, current_state, data FROM entities
            WHERE organization_id = ? AND entity_type = ?
            ORDER BY entity_id
            """,
            (organization_id, entity_type),
        )
        return [self._row_to_entity(r) for r in rows]

    async def set_entity_state(
        self,
        organization_id: str,
        entity_type: str,
        entity_id: str,
        expected_state: str | None,
        new_state: str,
    ) -> bool:
        """Compare-and-set in one UPDATE (``IS`` also matches NULL)."""
        count = await self._write(
            """
            UPDATE entities SET current_state = ?
            WHERE organization_id = ? AND entity_type = ? AND entity_id = ?
              AND current_state IS ?
            """,
            (new_state, organization_id, entity_type, entity_id, expected_state),
        )
        return count == 1

    async def update_entity_field(
        self, organization_id: str, entity_type: str, entity_id: str, field: str, value: Any
    ) -> bool:
        count = await self._write(
            """
            UPDATE entities SET data = json_set(data, ?, json(?))
            WHERE organization_id = ? AND entity_type = ? AND entity_id = ?
            """,
            (f"$.{field}", _dumps(value), organization_id, entity_type, entity_id),
        )
        return count == 1

    async def create_task(self, task: Task) -> str:
        await self._write(
            """
            INSERT INTO tasks (id, organization_id, entity_type, entity_id, title,
                               description, assignee_id, due_at, source_action_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id,
                task.organization_id,
                task.entity_type,
                task.entity_id,
                task.title,
                task.description,
                task.assignee_id,
                _to_ms(task.due_at),
                task.source_action_id,
                _to_ms(task.created_at),
            ),
        )
        return task.id

    async def list_tasks(self, organization_id: str, entity_type: str, entity_id: str) -> list[Task]:
        rows = await self._fetchall(
            """
            SELECT id, organization_id, entity_type, entity_id, title, description,
                   assignee_id, due_at, source_action_id, created_at
            FROM tasks
            WHERE organization_id = ? AND entity_type = ? AND entity_id = ?
            ORDER BY created_at
            """,
            (organization_id, entity_type, entity_id),
        )
        return [
            Task(
                id=r[0],
                organization_id=r[1],
                entity_type=r[2],
                entity_id=r[3],
                title=r[4],
                description=r[5],
                assignee_id=r[6],
                due_at=_from_ms(r[7]),
                source_action_id=r[8],
                created_at=_from_ms(r[9]),
            )
            for r in rows
        ]

    # ========================================================================
    # Ledger
    # ========================================================================

    async def claim_occurrence(self, pending: PendingJob) -> bool:
        """Insert-or-skip on UNIQUE (trigger_id, entity_id, occurrence_key)."""
        count = await self._write(
            """
            INSERT INTO pending_jobs (id, organization_id, trigger_id, entity_type, entity_id,
                                      occurrence_key, scheduled_for, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (trigger_id, entity_id, occurrence_key) DO NOTHING
            """,
            (
                pending.id,
                pending.organization_id,
                pending.trigger_id,
                pending.entity_type,
                pending.entity_id,
                pending.occurrence_key,
                _to_ms(pending.scheduled_for),
                pending.status.value,
                _to_ms(pending.created_at),
            ),
        )
        return count == 1

    async def mark_occurrence(
        self,
        trigger_id: str,
        entity_id: str,
        occurrence_key: str,
        status: OccurrenceStatus,
        error: str | None = None,
    ) -> bool:
        fired_at = _to_ms(datetime.now(UTC)) if status == OccurrenceStatus.FIRED else None
        count = await self._write(
            """
            UPDATE pending_jobs
            SET status = ?, last_error = ?, fired_at = COALESCE(?, fired_at)
            WHERE trigger_id = ? AND entity_id = ? AND occurrence_key = ?
            """,
            (status.value, error, fired_at, trigger_id, entity_id, occurrence_key),
        )
        return count == 1

    async def cancel_occurrences(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> int:
        return await self._write(
            """
            UPDATE pending_jobs SET status = 'CANCELLED'
            WHERE organization_id = ? AND entity_type = ? AND entity_id = ?
              AND status = 'CLAIMED'
            """,
            (organization_id, entity_type, entity_id),
        )

    async def purge_occurrences(self, before: datetime) -> int:
        return await self._write(
            "DELETE FROM pending_jobs WHERE status != 'CLAIMED' AND created_at < ?",
            (_to_ms(before),),
        )

    async def count_occurrences(self, status: OccurrenceStatus | None = None) -> int:
        if status is None:
            row = await self._fetchone("SELECT COUNT(*) FROM pending_jobs")
        else:
            row = await self._fetchone(
                "SELECT COUNT(*) FROM pending_jobs WHERE status = ?", (status.value,)
            )
        return row[0]

    async def get_occurrence(
        self, trigger_id: str, entity_id: str, occurrence_key: str
    ) -> PendingJob | None:
        row = await self._fetchone(
            """
            SELECT id, organization_id, trigger_id, entity_type, entity_id, occurrence_key,
                   scheduled_for, status, created_at, fired_at, last_error
            FROM pending_jobs
            WHERE trigger_id = ? AND entity_id = ? AND occurrence_key = ?
            """,
            (trigger_id, entity_id, occurrence_key),
        )
        if row is None:
            return None
        return PendingJob(
            id=row[0],
            organization_id=row[1],
            trigger_id=row[2],
            entity_type=row[3],
            entity_id=row[4],
            occurrence_key=row[5],
            scheduled_for=_from_ms(row[6]),
            status=OccurrenceStatus(row[7]),
            created_at=_from_ms(row[8]),
            fired_at=_from_ms(row[9]),
            last_error=row[10],
        )

    # ========================================================================
    # Execution log
    # ========================================================================

    async def log_event(self, event: ExecutionEvent) -> None:
        await self._write(
            """
            INSERT INTO workflow_execution_log (id, organization_id, graph_id, entity_type,
                entity_id, event_type, from_state, to_state, trigger_id, action_id,
                details, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.organization_id,
                event.graph_id,
                event.entity_type,
                event.entity_id,
                event.event_type.value,
                event.from_state,
                event.to_state,
                event.trigger_id,
                event.action_id,
                _dumps(event.details),
                _to_ms(event.created_at),
            ),
        )

    async def list_events(
        self, organization_id: str, entity_type: str, entity_id: str
    ) -> list[ExecutionEvent]:
        rows = await self._fetchall(
            """
            SELECT id, organization_id, graph_id, entity_type, entity_id, event_type,
                   from_state, to_state, trigger_id, action_id, details, created_at
            FROM workflow_execution_log
            WHERE organization_id = ? AND entity_type = ? AND entity_id = ?
            ORDER BY created_at, rowid
            """,
            (organization_id, entity_type, entity_id),
        )
        return [
            ExecutionEvent(
                id=r[0],
                organization_id=r[1],
                graph_id=r[2],
                entity_type=r[3],
                entity_id=r[4],
                event_type=EventType(r[5]),
                from_state=r[6],
                to_state=r[7],
                trigger_id=r[8],
                action_id=r[9],
                details=json.loads(r[10]),
                created_at=_from_ms(r[11]),
            )
            for r in rows
        ]

    # ========================================================================
    # Configuration writers
    # ========================================================================

    async def save_graph(self, graph: StateGraph) -> None:
        graph.validate()
        definition = {
            "states": [
                {
                    "id": s.id,
                    "name": s.name,
                    "state_type": s.state_type.value,
                    "display_name": s.display_name,
                }
                for s in graph.states
            ],
            "transitions": [
                {
                    "id": t.id,
                    "from_state_id": t.from_state_id,
                    "to_state_id": t.to_state_id,
                    "name": t.name,
                }
                for t in graph.transitions
            ],
        }
        await self._write(
            """
            INSERT OR REPLACE INTO workflow_graphs
                (id, organization_id, module, entity_type, name, is_active, definition)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                graph.id,
                graph.organization_id,
                graph.module,
                graph.entity_type,
                graph.name,
                int(graph.is_active),
                _dumps(definition),
            ),
        )

    async def save_trigger(self, trigger: Trigger) -> None:
        trigger.validate()
        await self._write(
            f"""
            INSERT OR REPLACE INTO workflow_triggers ({self._TRIGGER_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trigger.id,
                trigger.graph_id,
                trigger.organization_id,
                trigger.trigger_type.value,
                trigger.state_id,
                trigger.transition_id,
                trigger.time_offset_minutes,
                trigger.time_field,
                trigger.recurring_cron,
                int(trigger.is_active),
            ),
        )

    async def save_action(self, action: Action) -> None:
        action.validate()
        await self._write(
            """
            INSERT OR REPLACE INTO workflow_actions
                (id, trigger_id, action_type, action_order, template_id, action_config, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                action.id,
                action.trigger_id,
                action.action_type.value,
                action.action_order,
                action.template_id,
                _dumps(action.action_config),
                int(action.is_active),
            ),
        )

    async def save_template(self, template: MessageTemplate) -> None:
        await self._write(
            """
            INSERT OR REPLACE INTO message_templates
                (id, organization_id, channel, name, subject, body, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                template.id,
                template.organization_id,
                template.channel.value,
                template.name,
                template.subject,
                template.body,
                int(template.is_active),
            ),
        )

    async def save_entity(self, entity: EntityContext) -> None:
        record = entity.to_record()
        current_state = record.pop("current_state")
        await self._write(
            """
            INSERT OR REPLACE INTO entities
                (organization_id, entity_type, entity_id, current_state, data)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                entity.organization_id,
                entity.entity_type,
                entity.entity_id,
                current_state,
                _dumps(record),
            ),
        )

    # ========================================================================
    # Row mapping
    # ========================================================================

    def _row_to_graph(self, row: tuple) -> StateGraph:
        definition = json.loads(row[6])
        return StateGraph(
            id=row[0],
            organization_id=row[1],
            module=row[2],
            entity_type=row[3],
            name=row[4],
            is_active=bool(row[5]),
            states=[
                State(
                    id=s["id"],
                    name=s["name"],
                    state_type=StateType(s["state_type"]),
                    display_name=s.get("display_name"),
                )
                for s in definition["states"]
            ],
            transitions=[
                Transition(
                    id=t["id"],
                    from_state_id=t["from_state_id"],
                    to_state_id=t["to_state_id"],
                    name=t.get("name", ""),
                )
                for t in definition["transitions"]
            ],
        )

    def _row_to_trigger(self, row: tuple) -> Trigger:
        return Trigger(
            id=row[0],
            graph_id=row[1],
            organization_id=row[2],
            trigger_type=TriggerType(row[3]),
            state_id=row[4],
            transition_id=row[5],
            time_offset_minutes=row[6],
            time_field=row[7],
            recurring_cron=row[8],
            is_active=bool(row[9]),
        )

    def _row_to_action(self, row: tuple) -> Action:
        return Action(
            id=row[0],
            trigger_id=row[1],
            action_type=ActionType(row[2]),
            action_order=row[3],
            template_id=row[4],
            action_config=json.loads(row[5]),
            is_active=bool(row[6]),
        )

    def _row_to_entity(self, row: tuple) -> EntityContext:
        record = json.loads(row[2])
        record["current_state"] = row[1]
        return entity_from_record(row[0], record)


class SqliteJobQueue(_SqliteAdapter, JobQueue):
    """SQLite-backed durable job queue.

    Implements WorkNotificationSource for workers in the same process;
    workers in other processes fall back to polling.

    Usage:
        queue = SqliteJobQueue("statewise.db")
        await queue.connect()
    """

    def __init__(self, db_path: str):
        super().__init__(db_path)
        self._work_notify = asyncio.Event()

    def work_notify(self) -> asyncio.Event:
        """Return event for work notifications (WorkNotificationSource protocol)."""
        return self._work_notify

    async def _create_schema(self) -> None:
        await self._connection.executescript("""
            CREATE TABLE IF NOT EXISTS job_queue (
                job_id TEXT PRIMARY KEY,
                job_type TEXT NOT NULL,
                payload TEXT NOT NULL,
                priority TEXT CHECK( priority IN ('critical','default','low') ) NOT NULL,
                status TEXT CHECK( status IN (
                    'PENDING','RUNNING','COMPLETE','FAILED'
                ) ) NOT NULL,
                locked_by TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                error_message TEXT,
                scheduled_for INTEGER,
                unique_key TEXT UNIQUE,
                claimed_at INTEGER,
                completed_at INTEGER
            );
            CREATE INDEX IF NOT EXISTS idx_job_queue_ready
                ON job_queue(status, priority, scheduled_for, created_at);
        """)

    _COLUMNS = (
        "job_id, job_type, payload, priority, status, locked_by, attempts, max_attempts, "
        "created_at, updated_at, error_message, scheduled_for, unique_key, claimed_at, "
        "completed_at"
    )

    async def enqueue(self, job: Job) -> str | None:
        count = await self._write(
            f"""
            INSERT INTO job_queue ({self._COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (
                job.job_id,
                job.job_type,
                _dumps(job.payload),
                job.priority.value,
                job.status.value,
                job.locked_by,
                job.attempts,
                job.max_attempts,
                _to_ms(job.created_at),
                _to_ms(job.updated_at),
                job.error_message,
                _to_ms(job.scheduled_for),
                job.unique_key,
                _to_ms(job.claimed_at),
                _to_ms(job.completed_at),
            ),
        )
        if count != 1:
            return None

        self._work_notify.set()
        return job.job_id

    async def dequeue(self, worker_id: str, order: list[Priority]) -> Job | None:
        """Claim the next ready job in one statement.

        Design Pattern: Optimistic Concurrency Control
        UPDATE with WHERE status = 'PENDING' on a sub-select ensures only
        one worker claims each job. The requested priority order is
        expressed as a CASE rank.
        """
        if not order:
            return None

        now_ms = _to_ms(datetime.now(UTC))
        placeholders = ", ".join("?" for _ in order)
        rank = " ".join(f"WHEN ? THEN {i}" for i in range(len(order)))
        values = tuple(p.value for p in order)

        async with self._lock:
            row = await self._fetchone(
                f"""
                UPDATE job_queue
                SET status = 'RUNNING',
                    locked_by = ?,
                    attempts = attempts + 1,
                    claimed_at = ?,
                    updated_at = ?
                WHERE job_id = (
                    SELECT job_id FROM job_queue
                    WHERE status = 'PENDING'
                      AND priority IN ({placeholders})
                      AND (scheduled_for IS NULL OR scheduled_for <= ?)
                    ORDER BY CASE priority {rank} END,
                             COALESCE(scheduled_for, created_at) ASC,
                             created_at ASC
                    LIMIT 1
                )
                AND status = 'PENDING'
                RETURNING {self._COLUMNS}
                """,
                (worker_id, now_ms, now_ms, *values, now_ms, *values),
            )

        return self._row_to_job(row) if row else None

    async def _update_one(self, job_id: str, sql: str, params: tuple) -> None:
        count = await self._write(sql, params)
        if count == 0:
            raise StorageError(f"Job not found: job_id={job_id}")

    async def complete(self, job_id: str) -> None:
        now_ms = _to_ms(datetime.now(UTC))
        await self._update_one(
            job_id,
            """
            UPDATE job_queue
            SET status = 'COMPLETE', locked_by = NULL, completed_at = ?, updated_at = ?
            WHERE job_id = ?
            """,
            (now_ms, now_ms, job_id),
        )

    async def retry(self, job_id: str, error_message: str, delay: timedelta) -> None:
        """Reschedule a failed job.

        1. Sets error_message
        2. Sets status back to PENDING
        3. Clears locked_by
        4. Sets scheduled_for (current time + delay)
        """
        now = datetime.now(UTC)
        await self._update_one(
            job_id,
            """
            UPDATE job_queue
            SET status = 'PENDING', locked_by = NULL, error_message = ?,
                scheduled_for = ?, updated_at = ?
            WHERE job_id = ?
            """,
            (error_message, _to_ms(now + delay), _to_ms(now), job_id),
        )
        self._work_notify.set()

    async def dead_letter(self, job_id: str, error_message: str) -> None:
        now_ms = _to_ms(datetime.now(UTC))
        await self._update_one(
            job_id,
            """
            UPDATE job_queue
            SET status = 'FAILED', locked_by = NULL, error_message = ?,
                completed_at = ?, updated_at = ?
            WHERE job_id = ?
            """,
            (error_message, now_ms, now_ms, job_id),
        )

    async def release(self, job_id: str, reason: str) -> None:
        await self._update_one(
            job_id,
            """
            UPDATE job_queue
            SET status = 'PENDING', locked_by = NULL, error_message = ?,
                attempts = MAX(attempts - 1, 0), updated_at = ?
            WHERE job_id = ?
            """,
            (reason, _to_ms(datetime.now(UTC)), job_id),
        )
        self._work_notify.set()

    async def recover_stale(self, claimed_before: datetime) -> int:
        recovered = await self._write(
            """
            UPDATE job_queue
            SET status = 'PENDING',
                error_message = ? || ' (locked by ' || COALESCE(locked_by, '?') || ')',
                locked_by = NULL, updated_at = ?
            WHERE status = 'RUNNING' AND claimed_at < ?
            """,
            (STALE_REASON, _to_ms(datetime.now(UTC)), _to_ms(claimed_before)),
        )
        if recovered:
            self._work_notify.set()
        return recovered

    async def get_job(self, job_id: str) -> Job | None:
        row = await self._fetchone(
            f"SELECT {self._COLUMNS} FROM job_queue WHERE job_id = ?", (job_id,)
        )
        return self._row_to_job(row) if row else None

    async def list_jobs(self, status: JobStatus | None = None) -> list[Job]:
        if status is None:
            rows = await self._fetchall(
                f"SELECT {self._COLUMNS} FROM job_queue ORDER BY created_at, rowid"
            )
        else:
            rows = await self._fetchall(
                f"SELECT {self._COLUMNS} FROM job_queue WHERE status = ? "
                "ORDER BY created_at, rowid",
                (status.value,),
            )
        return [self._row_to_job(r) for r in rows]

    async def purge_terminal(self, before: datetime) -> int:
        return await self._write(
            """
            DELETE FROM job_queue
            WHERE status IN ('COMPLETE', 'FAILED') AND updated_at < ?
            """,
            (_to_ms(before),),
        )

    async def counts(self) -> dict[JobStatus, int]:
        rows = await self._fetchall("SELECT status, COUNT(*) FROM job_queue GROUP BY status")
        result = {status: 0 for status in JobStatus}
        for status, count in rows:
            result[JobStatus(status)] = count
        return result

    def _row_to_job(self, row: tuple) -> Job:
        return Job(
            job_id=row[0],
            job_type=row[1],
            payload=json.loads(row[2]),
            priority=Priority(row[3]),
            status=JobStatus(row[4]),
            locked_by=row[5],
            attempts=row[6],
            max_attempts=row[7],
            created_at=_from_ms(row[8]),
            updated_at=_from_ms(row[9]),
            error_message=row[10],
            scheduled_for=_from_ms(row[11]),
            unique_key=row[12],
            claimed_at=_from_ms(row[13]),
            completed_at=_from_ms(row[14]),
        )
