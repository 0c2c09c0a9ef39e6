"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import JsonValue

from ..models import Edge, Node, Workflow
from .models import ActivityRecord, InstanceRecord, Status, utcnow
from .repository import SerializedTransactions, WorkflowRepository

_INSTANCE_COLUMNS = (
    "id, workflow_id, status, input, output, error, started_at, finished_at, "
    "parent_instance_id, parent_activity_id, pending_activations"
)
_ACTIVITY_COLUMNS = (
    "id, rowid AS seq, instance_id, workflow_id, node_id, status, input, output, "
    "error, started_at, finished_at, updated_at"
)


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _loads(value: str | None) -> Any:
    return None if value is None else json.loads(value)


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(SerializedTransactions, WorkflowRepository):
    """Persist graphs and execution state using SQLite."""

    def __init__(self, db_path: str | Path):
        self._init_serialization()
        self.db_path = str(db_path)
        # autocommit mode; transactions are opened explicitly
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS _workflow (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS _node (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES _workflow(id),
                label TEXT,
                kind TEXT NOT NULL,
                data TEXT NOT NULL,
                input_expression TEXT,
                output_expression TEXT,
                position INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS _edge (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id TEXT NOT NULL REFERENCES _workflow(id),
                source_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                condition TEXT,
                source_handle TEXT,
                target_handle TEXT,
                position INTEGER NOT NULL
            );
            CREATE TABLE IF NOT EXISTS _instance (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                parent_instance_id TEXT,
                parent_activity_id TEXT,
                pending_activations INTEGER NOT NULL DEFAULT 0
            );
            CREATE TABLE IF NOT EXISTS _activity (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                updated_at TEXT
            );
            CREATE INDEX IF NOT EXISTS _activity_instance ON _activity(instance_id);
            CREATE TABLE IF NOT EXISTS _activation (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL
            );
            """
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.execute(query, params)
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return self._conn.execute(query, params).fetchall()

    async def _run(self, fn: Any, *args: Any) -> Any:
        async with self._guard():
            return await asyncio.to_thread(fn, *args)

    async def _begin(self) -> None:
        await asyncio.to_thread(self._conn.execute, "BEGIN IMMEDIATE")

    async def _commit(self) -> None:
        await asyncio.to_thread(self._conn.execute, "COMMIT")

    async def _rollback(self) -> None:
        await asyncio.to_thread(self._conn.execute, "ROLLBACK")

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)

    @staticmethod
    def _instance(row: sqlite3.Row) -> InstanceRecord:
        return InstanceRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=Status(row["status"]),
            input=_loads(row["input"]),
            output=_loads(row["output"]),
            error=row["error"],
            started_at=_ts(row["started_at"]),
            finished_at=_ts(row["finished_at"]),
            parent_instance_id=row["parent_instance_id"],
            parent_activity_id=row["parent_activity_id"],
            pending_activations=row["pending_activations"],
        )

    @staticmethod
    def _activity(row: sqlite3.Row) -> ActivityRecord:
        return ActivityRecord(
            id=row["id"],
            seq=row["seq"],
            instance_id=row["instance_id"],
            workflow_id=row["workflow_id"],
            node_id=row["node_id"],
            status=Status(row["status"]),
            input=_loads(row["input"]),
            output=_loads(row["output"]),
            error=row["error"],
            started_at=_ts(row["started_at"]),
            finished_at=_ts(row["finished_at"]),
            updated_at=_ts(row["updated_at"]),
        )

    @staticmethod
    def _node(row: sqlite3.Row) -> Node:
        return Node(
            id=row["id"],
            workflow_id=row["workflow_id"],
            label=row["label"] or "",
            config=json.loads(row["data"]),
            input_expression=row["input_expression"],
            output_expression=row["output_expression"],
        )

    @staticmethod
    def _edge(row: sqlite3.Row) -> Edge:
        return Edge(
            source_id=row["source_id"],
            target_id=row["target_id"],
            kind=row["kind"],
            condition=row["condition"],
            source_handle=row["source_handle"],
            target_handle=row["target_handle"],
        )

    # ------------------------------------------------------------------
    # Graph
    def _save_workflow(self, workflow: Workflow) -> None:
        self._conn.execute("DELETE FROM _edge WHERE workflow_id = ?", (workflow.id,))
        self._conn.execute("DELETE FROM _node WHERE workflow_id = ?", (workflow.id,))
        self._conn.execute(
            "INSERT INTO _workflow (id, name) VALUES (?, ?) "
            "ON CONFLICT(id) DO UPDATE SET name = excluded.name",
            (workflow.id, workflow.name),
        )
        for position, node in enumerate(workflow.nodes):
            self._conn.execute(
                "INSERT INTO _node (id, workflow_id, label, kind, data, input_expression, "
                "output_expression, position) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    node.id,
                    workflow.id,
                    node.label,
                    node.kind.value,
                    node.config.model_dump_json(),
                    node.input_expression,
                    node.output_expression,
                    position,
                ),
            )
        for position, edge in enumerate(workflow.edges):
            self._conn.execute(
                "INSERT INTO _edge (workflow_id, source_id, target_id, kind, condition, "
                "source_handle, target_handle, position) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    workflow.id,
                    edge.source_id,
                    edge.target_id,
                    edge.kind.value,
                    edge.condition,
                    edge.source_handle,
                    edge.target_handle,
                    position,
                ),
            )

    async def save_workflow(self, workflow: Workflow) -> None:
        async with self.transaction():
            await asyncio.to_thread(self._save_workflow, workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await self._run(
            self._fetchone, "SELECT id, name FROM _workflow WHERE id = ?", workflow_id
        )
        if not row:
            return None
        nodes = await self._run(
            self._fetchall,
            "SELECT * FROM _node WHERE workflow_id = ? ORDER BY position",
            workflow_id,
        )
        edges = await self._run(
            self._fetchall,
            "SELECT * FROM _edge WHERE workflow_id = ? ORDER BY position",
            workflow_id,
        )
        return Workflow(
            id=row["id"],
            name=row["name"],
            nodes=[self._node(n) for n in nodes],
            edges=[self._edge(e) for e in edges],
        )

    async def get_node(self, node_id: str) -> Node | None:
        row = await self._run(self._fetchone, "SELECT * FROM _node WHERE id = ?", node_id)
        return self._node(row) if row else None

    async def list_outbound_edges(self, node_id: str) -> list[Edge]:
        rows = await self._run(
            self._fetchall,
            "SELECT * FROM _edge WHERE source_id = ? ORDER BY position",
            node_id,
        )
        return [self._edge(r) for r in rows]

    async def list_inbound_edges(self, node_id: str) -> list[Edge]:
        rows = await self._run(
            self._fetchall,
            "SELECT * FROM _edge WHERE target_id = ? ORDER BY position",
            node_id,
        )
        return [self._edge(r) for r in rows]

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(
        self,
        workflow_id: str,
        input: JsonValue = None,
        parent_instance_id: Optional[str] = None,
        parent_activity_id: Optional[str] = None,
    ) -> InstanceRecord:
        instance = InstanceRecord(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            input=input,
            parent_instance_id=parent_instance_id,
            parent_activity_id=parent_activity_id,
        )
        await self._run(
            self._execute,
            "INSERT INTO _instance (id, workflow_id, status, input, started_at, "
            "parent_instance_id, parent_activity_id) VALUES (?, ?, ?, ?, ?, ?, ?)",
            instance.id,
            workflow_id,
            instance.status.value,
            _dumps(input),
            instance.started_at.isoformat(),
            parent_instance_id,
            parent_activity_id,
        )
        return instance

    async def get_instance(self, instance_id: str) -> InstanceRecord | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_INSTANCE_COLUMNS} FROM _instance WHERE id = ?",
            instance_id,
        )
        return self._instance(row) if row else None

    async def list_instances(
        self, workflow_id: Optional[str] = None
    ) -> list[InstanceRecord]:
        if workflow_id:
            rows = await self._run(
                self._fetchall,
                f"SELECT {_INSTANCE_COLUMNS} FROM _instance WHERE workflow_id = ? "
                "ORDER BY started_at DESC",
                workflow_id,
            )
        else:
            rows = await self._run(
                self._fetchall,
                f"SELECT {_INSTANCE_COLUMNS} FROM _instance ORDER BY started_at DESC",
            )
        return [self._instance(r) for r in rows]

    async def finish_instance(
        self,
        instance_id: str,
        status: Status,
        output: JsonValue = None,
        error: Optional[str] = None,
    ) -> bool:
        changed = await self._run(
            self._execute,
            """
            UPDATE _instance
            SET status = ?, output = ?, error = ?, finished_at = ?
            WHERE id = ? AND status = 'running'
            """,
            status.value,
            _dumps(output),
            error,
            utcnow().isoformat(),
            instance_id,
        )
        return changed == 1

    def _reserve(self, instance_id: str, activation_id: str) -> None:
        if self._execute(
            "INSERT OR IGNORE INTO _activation (id, instance_id) "
            "SELECT ?, id FROM _instance WHERE id = ?",
            activation_id,
            instance_id,
        ):
            self._execute(
                "UPDATE _instance SET pending_activations = pending_activations + 1 "
                "WHERE id = ?",
                instance_id,
            )

    def _release(self, instance_id: str, activation_id: str) -> bool:
        if not self._execute(
            "DELETE FROM _activation WHERE id = ? AND instance_id = ?",
            activation_id,
            instance_id,
        ):
            return False
        self._execute(
            "UPDATE _instance SET pending_activations = pending_activations - 1 "
            "WHERE id = ?",
            instance_id,
        )
        return True

    async def reserve_activation(self, instance_id: str, activation_id: str) -> None:
        async with self.transaction():
            await asyncio.to_thread(self._reserve, instance_id, activation_id)

    async def release_activation(self, instance_id: str, activation_id: str) -> bool:
        async with self.transaction():
            return await asyncio.to_thread(self._release, instance_id, activation_id)

    async def lock_instance(self, instance_id: str) -> None:
        # BEGIN IMMEDIATE already holds the database write lock
        pass

    # ------------------------------------------------------------------
    # Activities
    async def create_activity(
        self, instance_id: str, workflow_id: str, node_id: str, input: JsonValue = None
    ) -> ActivityRecord:
        activity_id = str(uuid.uuid4())
        await self._run(
            self._execute,
            "INSERT INTO _activity (id, instance_id, workflow_id, node_id, status, input, "
            "started_at) VALUES (?, ?, ?, ?, 'running', ?, ?)",
            activity_id,
            instance_id,
            workflow_id,
            node_id,
            _dumps(input),
            utcnow().isoformat(),
        )
        activity = await self.get_activity(activity_id)
        assert activity is not None
        return activity

    async def record_activity_output(self, activity_id: str, output: JsonValue) -> None:
        await self._run(
            self._execute,
            "UPDATE _activity SET output = ?, updated_at = ? WHERE id = ? AND status = 'running'",
            _dumps(output),
            utcnow().isoformat(),
            activity_id,
        )

    async def close_activity(
        self,
        activity_id: str,
        status: Status,
        output: JsonValue = None,
        error: Optional[str] = None,
    ) -> bool:
        now = utcnow().isoformat()
        changed = await self._run(
            self._execute,
            """
            UPDATE _activity
            SET status = ?, output = COALESCE(?, output), error = ?,
                finished_at = ?, updated_at = ?
            WHERE id = ? AND status = 'running'
            """,
            status.value,
            _dumps(output),
            error,
            now,
            now,
            activity_id,
        )
        return changed == 1

    async def get_activity(self, activity_id: str) -> ActivityRecord | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_ACTIVITY_COLUMNS} FROM _activity WHERE id = ?",
            activity_id,
        )
        return self._activity(row) if row else None

    async def list_activities(self, instance_id: str) -> list[ActivityRecord]:
        rows = await self._run(
            self._fetchall,
            f"SELECT {_ACTIVITY_COLUMNS} FROM _activity WHERE instance_id = ? ORDER BY rowid",
            instance_id,
        )
        return [self._activity(r) for r in rows]

    async def find_running_activity(
        self, instance_id: str, node_id: str
    ) -> ActivityRecord | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_ACTIVITY_COLUMNS} FROM _activity "
            "WHERE instance_id = ? AND node_id = ? AND status = 'running' "
            "ORDER BY rowid DESC LIMIT 1",
            instance_id,
            node_id,
        )
        return self._activity(row) if row else None

    async def count_running_activities(self, instance_id: str) -> int:
        row = await self._run(
            self._fetchone,
            "SELECT COUNT(*) AS n FROM _activity WHERE instance_id = ? AND status = 'running'",
            instance_id,
        )
        return row["n"]
