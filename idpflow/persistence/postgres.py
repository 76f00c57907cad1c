"""PostgreSQL implementation of the workflow store."""

from __future__ import annotations

from typing import Any, Optional

import asyncpg

from ..contracts import Step, Workflow, WorkflowStatus
from .store import WorkflowStore

_TERMINAL = [
    s.value for s in (WorkflowStatus.SUCCEEDED, WorkflowStatus.FAILED, WorkflowStatus.ABORTED)
]


class PostgresWorkflowStore(WorkflowStore):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS idp_workflows (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL,
                remote_ref TEXT,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS idp_workflow_steps (
                workflow_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                step_id TEXT NOT NULL,
                data JSONB NOT NULL,
                PRIMARY KEY (workflow_id, position)
            )
            """
        )

    async def _insert_steps(
        self, conn: asyncpg.Connection, workflow_id: str, steps: list[Step]
    ) -> None:
        await conn.executemany(
            "INSERT INTO idp_workflow_steps (workflow_id, position, step_id, data) VALUES ($1, $2, $3, $4)",
            [
                (workflow_id, position, step.id, step.model_dump_json())
                for position, step in enumerate(steps)
            ],
        )

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: Workflow, steps: list[Step]) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "INSERT INTO idp_workflows (id, status, remote_ref, data) VALUES ($1, $2, $3, $4)",
                    workflow.id,
                    workflow.status.value,
                    workflow.remote_ref,
                    workflow.model_dump_json(),
                )
                await self._insert_steps(conn, workflow.id, steps)
        finally:
            await conn.close()

    async def save_workflow(self, workflow: Workflow) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE idp_workflows SET status = $1, remote_ref = $2, data = $3 WHERE id = $4",
                workflow.status.value,
                workflow.remote_ref,
                workflow.model_dump_json(),
                workflow.id,
            )
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data::text AS data FROM idp_workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return Workflow.model_validate_json(row["data"])

    async def list_workflows(
        self, status: Optional[WorkflowStatus] = None, limit: Optional[int] = None
    ) -> list[Workflow]:
        query = "SELECT data::text AS data FROM idp_workflows"
        params: list[Any] = []
        if status is not None:
            params.append(status.value)
            query += f" WHERE status = ${len(params)}"
        query += " ORDER BY seq"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [Workflow.model_validate_json(r["data"]) for r in rows]

    async def get_steps(self, workflow_id: str) -> list[Step]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT data::text AS data FROM idp_workflow_steps WHERE workflow_id = $1 ORDER BY position",
                workflow_id,
            )
        finally:
            await conn.close()
        return [Step.model_validate_json(r["data"]) for r in rows]

    async def save_step(self, workflow_id: str, step: Step) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE idp_workflow_steps SET data = $1 WHERE workflow_id = $2 AND step_id = $3",
                step.model_dump_json(),
                workflow_id,
                step.id,
            )
        finally:
            await conn.close()

    async def replace_steps(self, workflow_id: str, steps: list[Step]) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM idp_workflow_steps WHERE workflow_id = $1", workflow_id
                )
                await self._insert_steps(conn, workflow_id, steps)
        finally:
            await conn.close()

    async def list_remote_tracked(self) -> list[Workflow]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT data::text AS data FROM idp_workflows "
                "WHERE remote_ref IS NOT NULL AND NOT (status = ANY($1::text[])) ORDER BY seq",
                _TERMINAL,
            )
        finally:
            await conn.close()
        return [Workflow.model_validate_json(r["data"]) for r in rows]
