"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Optional

import asyncpg
from pydantic import JsonValue

from ..models import Edge, Node, Workflow
from .models import ActivityRecord, InstanceRecord, Status, utcnow
from .repository import WorkflowRepository

_INSTANCE_COLUMNS = (
    "id, workflow_id, status, input, output, error, started_at, finished_at, "
    "parent_instance_id, parent_activity_id, pending_activations"
)
_ACTIVITY_COLUMNS = (
    "id, seq, instance_id, workflow_id, node_id, status, input, output, error, "
    "started_at, finished_at, updated_at"
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS _workflow (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS _node (
    id TEXT PRIMARY KEY,
    workflow_id TEXT NOT NULL REFERENCES _workflow(id),
    label TEXT,
    kind TEXT NOT NULL,
    data JSONB NOT NULL,
    input_expression TEXT,
    output_expression TEXT,
    position INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS _edge (
    id BIGSERIAL PRIMARY KEY,
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
    input JSONB,
    output JSONB,
    error TEXT,
    started_at TIMESTAMPTZ NOT NULL,
    finished_at TIMESTAMPTZ,
    parent_instance_id TEXT,
    parent_activity_id TEXT,
    pending_activations INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS _activity (
    id TEXT PRIMARY KEY,
    seq BIGSERIAL,
    instance_id TEXT NOT NULL,
    workflow_id TEXT NOT NULL,
    node_id TEXT NOT NULL,
    status TEXT NOT NULL,
    input JSONB,
    output JSONB,
    error TEXT,
    started_at TIMESTAMPTZ NOT NULL,
    finished_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS _activity_instance ON _activity(instance_id, seq);
CREATE TABLE IF NOT EXISTS _activation (
    id TEXT PRIMARY KEY,
    instance_id TEXT NOT NULL
);
"""


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _loads(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1"
    return int(status.split()[-1])


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist graphs and execution state using PostgreSQL.

    A transaction binds one pooled connection to the current task; calls
    made inside it reuse that connection.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None
        self._tx_conn: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
            f"stationflow_pg_tx_{id(self)}", default=None
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._dsn, min_size=self._min_size, max_size=self._max_size
            )
            async with self._pool.acquire() as conn:
                await conn.execute(_SCHEMA)
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._tx_conn.get() is not None:
            yield
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                token = self._tx_conn.set(conn)
                try:
                    yield
                finally:
                    self._tx_conn.reset(token)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @staticmethod
    def _instance(row: asyncpg.Record) -> InstanceRecord:
        return InstanceRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            status=Status(row["status"]),
            input=_loads(row["input"]),
            output=_loads(row["output"]),
            error=row["error"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            parent_instance_id=row["parent_instance_id"],
            parent_activity_id=row["parent_activity_id"],
            pending_activations=row["pending_activations"],
        )

    @staticmethod
    def _activity(row: asyncpg.Record) -> ActivityRecord:
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
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _node(row: asyncpg.Record) -> Node:
        return Node(
            id=row["id"],
            workflow_id=row["workflow_id"],
            label=row["label"] or "",
            config=_loads(row["data"]),
            input_expression=row["input_expression"],
            output_expression=row["output_expression"],
        )

    @staticmethod
    def _edge(row: asyncpg.Record) -> Edge:
        return Edge(
            source_id=row["source_id"],
            target_id=row["target_id"],
            kind=row["kind"],
            condition=row["condition"],
            source_handle=row["source_handle"],
            target_handle=row["target_handle"],
        )

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        async with self.transaction():
            async with self._connection() as conn:
                await conn.execute("DELETE FROM _edge WHERE workflow_id = $1", workflow.id)
                await conn.execute("DELETE FROM _node WHERE workflow_id = $1", workflow.id)
                await conn.execute(
                    "INSERT INTO _workflow (id, name) VALUES ($1, $2) "
                    "ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name",
                    workflow.id,
                    workflow.name,
                )
                await conn.executemany(
                    "INSERT INTO _node (id, workflow_id, label, kind, data, input_expression, "
                    "output_expression, position) VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8)",
                    [
                        (
                            node.id,
                            workflow.id,
                            node.label,
                            node.kind.value,
                            node.config.model_dump_json(),
                            node.input_expression,
                            node.output_expression,
                            position,
                        )
                        for position, node in enumerate(workflow.nodes)
                    ],
                )
                await conn.executemany(
                    "INSERT INTO _edge (workflow_id, source_id, target_id, kind, condition, "
                    "source_handle, target_handle, position) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                    [
                        (
                            workflow.id,
                            edge.source_id,
                            edge.target_id,
                            edge.kind.value,
                            edge.condition,
                            edge.source_handle,
                            edge.target_handle,
                            position,
                        )
                        for position, edge in enumerate(workflow.edges)
                    ],
                )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT id, name FROM _workflow WHERE id = $1", workflow_id
            )
            if not row:
                return None
            nodes = await conn.fetch(
                "SELECT * FROM _node WHERE workflow_id = $1 ORDER BY position", workflow_id
            )
            edges = await conn.fetch(
                "SELECT * FROM _edge WHERE workflow_id = $1 ORDER BY position", workflow_id
            )
        return Workflow(
            id=row["id"],
            name=row["name"],
            nodes=[self._node(n) for n in nodes],
            edges=[self._edge(e) for e in edges],
        )

    async def get_node(self, node_id: str) -> Node | None:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM _node WHERE id = $1", node_id)
        return self._node(row) if row else None

    async def list_outbound_edges(self, node_id: str) -> list[Edge]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM _edge WHERE source_id = $1 ORDER BY position", node_id
            )
        return [self._edge(r) for r in rows]

    async def list_inbound_edges(self, node_id: str) -> list[Edge]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM _edge WHERE target_id = $1 ORDER BY position", node_id
            )
        return [self._edge(r) for r in rows]

    # ------------------------------------------------------------------
    async def create_instance(
        self,
        workflow_id: str,
        input: JsonValue = None,
        parent_instance_id: Optional[str] = None,
        parent_activity_id: Optional[str] = None,
    ) -> InstanceRecord:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO _instance (id, workflow_id, status, input, started_at,
                                       parent_instance_id, parent_activity_id)
                VALUES ($1, $2, 'running', $3::jsonb, $4, $5, $6)
                RETURNING {_INSTANCE_COLUMNS}
                """,
                str(uuid.uuid4()),
                workflow_id,
                _dumps(input),
                utcnow(),
                parent_instance_id,
                parent_activity_id,
            )
        return self._instance(row)

    async def get_instance(self, instance_id: str) -> InstanceRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_INSTANCE_COLUMNS} FROM _instance WHERE id = $1", instance_id
            )
        return self._instance(row) if row else None

    async def list_instances(
        self, workflow_id: Optional[str] = None
    ) -> list[InstanceRecord]:
        async with self._connection() as conn:
            if workflow_id:
                rows = await conn.fetch(
                    f"SELECT {_INSTANCE_COLUMNS} FROM _instance WHERE workflow_id = $1 "
                    "ORDER BY started_at DESC",
                    workflow_id,
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_INSTANCE_COLUMNS} FROM _instance ORDER BY started_at DESC"
                )
        return [self._instance(r) for r in rows]

    async def finish_instance(
        self,
        instance_id: str,
        status: Status,
        output: JsonValue = None,
        error: Optional[str] = None,
    ) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE _instance
                SET status = $1, output = $2::jsonb, error = $3, finished_at = now()
                WHERE id = $4 AND status = 'running'
                """,
                status.value,
                _dumps(output),
                error,
                instance_id,
            )
        return _affected(result) == 1

    async def reserve_activation(self, instance_id: str, activation_id: str) -> None:
        async with self.transaction(), self._connection() as conn:
            result = await conn.execute(
                "INSERT INTO _activation (id, instance_id) "
                "SELECT $1, id FROM _instance WHERE id = $2 "
                "ON CONFLICT (id) DO NOTHING",
                activation_id,
                instance_id,
            )
            if _affected(result):
                await conn.execute(
                    "UPDATE _instance SET pending_activations = pending_activations + 1 "
                    "WHERE id = $1",
                    instance_id,
                )

    async def release_activation(self, instance_id: str, activation_id: str) -> bool:
        async with self.transaction(), self._connection() as conn:
            result = await conn.execute(
                "DELETE FROM _activation WHERE id = $1 AND instance_id = $2",
                activation_id,
                instance_id,
            )
            if not _affected(result):
                return False
            await conn.execute(
                "UPDATE _instance SET pending_activations = pending_activations - 1 "
                "WHERE id = $1",
                instance_id,
            )
        return True

    async def lock_instance(self, instance_id: str) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "SELECT id FROM _instance WHERE id = $1 FOR UPDATE", instance_id
            )

    # ------------------------------------------------------------------
    async def create_activity(
        self, instance_id: str, workflow_id: str, node_id: str, input: JsonValue = None
    ) -> ActivityRecord:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO _activity (id, instance_id, workflow_id, node_id, status, input,
                                       started_at)
                VALUES ($1, $2, $3, $4, 'running', $5::jsonb, now())
                RETURNING {_ACTIVITY_COLUMNS}
                """,
                str(uuid.uuid4()),
                instance_id,
                workflow_id,
                node_id,
                _dumps(input),
            )
        return self._activity(row)

    async def record_activity_output(self, activity_id: str, output: JsonValue) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "UPDATE _activity SET output = $1::jsonb, updated_at = now() "
                "WHERE id = $2 AND status = 'running'",
                _dumps(output),
                activity_id,
            )

    async def close_activity(
        self,
        activity_id: str,
        status: Status,
        output: JsonValue = None,
        error: Optional[str] = None,
    ) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE _activity
                SET status = $1, output = COALESCE($2::jsonb, output), error = $3,
                    finished_at = now(), updated_at = now()
                WHERE id = $4 AND status = 'running'
                """,
                status.value,
                _dumps(output),
                error,
                activity_id,
            )
        return _affected(result) == 1

    async def get_activity(self, activity_id: str) -> ActivityRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ACTIVITY_COLUMNS} FROM _activity WHERE id = $1", activity_id
            )
        return self._activity(row) if row else None

    async def list_activities(self, instance_id: str) -> list[ActivityRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_ACTIVITY_COLUMNS} FROM _activity WHERE instance_id = $1 ORDER BY seq",
                instance_id,
            )
        return [self._activity(r) for r in rows]

    async def find_running_activity(
        self, instance_id: str, node_id: str
    ) -> ActivityRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_ACTIVITY_COLUMNS} FROM _activity
                WHERE instance_id = $1 AND node_id = $2 AND status = 'running'
                ORDER BY seq DESC LIMIT 1
                """,
                instance_id,
                node_id,
            )
        return self._activity(row) if row else None

    async def count_running_activities(self, instance_id: str) -> int:
        async with self._connection() as conn:
            return await conn.fetchval(
                "SELECT COUNT(*) FROM _activity WHERE instance_id = $1 AND status = 'running'",
                instance_id,
            )
