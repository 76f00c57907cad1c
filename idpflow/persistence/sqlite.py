"""SQLite implementation of the workflow store."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any, Optional

from ..contracts import Step, Workflow, WorkflowStatus
from .store import WorkflowStore

_TERMINAL = tuple(
    s.value for s in (WorkflowStatus.SUCCEEDED, WorkflowStatus.FAILED, WorkflowStatus.ABORTED)
)


class SQLiteWorkflowStore(WorkflowStore):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                status TEXT NOT NULL,
                remote_ref TEXT,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                workflow_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                step_id TEXT NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (workflow_id, position)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _executemany(self, statements: list[tuple[str, tuple[Any, ...]]]) -> None:
        cur = self._conn.cursor()
        for query, params in statements:
            cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _step_inserts(self, workflow_id: str, steps: list[Step]) -> list[tuple[str, tuple[Any, ...]]]:
        return [
            (
                "INSERT INTO workflow_steps (workflow_id, position, step_id, data) VALUES (?, ?, ?, ?)",
                (workflow_id, position, step.id, step.model_dump_json()),
            )
            for position, step in enumerate(steps)
        ]

    # ------------------------------------------------------------------
    # Store API
    async def create_workflow(self, workflow: Workflow, steps: list[Step]) -> None:
        statements = [
            (
                "INSERT INTO workflows (id, status, remote_ref, data) VALUES (?, ?, ?, ?)",
                (workflow.id, workflow.status.value, workflow.remote_ref, workflow.model_dump_json()),
            )
        ]
        statements.extend(self._step_inserts(workflow.id, steps))
        await asyncio.to_thread(self._executemany, statements)

    async def save_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET status = ?, remote_ref = ?, data = ? WHERE id = ?",
            workflow.status.value,
            workflow.remote_ref,
            workflow.model_dump_json(),
            workflow.id,
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM workflows WHERE id = ?", workflow_id
        )
        if not row:
            return None
        return Workflow.model_validate_json(row["data"])

    async def list_workflows(
        self, status: Optional[WorkflowStatus] = None, limit: Optional[int] = None
    ) -> list[Workflow]:
        query = "SELECT data FROM workflows"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY seq"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Workflow.model_validate_json(r["data"]) for r in rows]

    async def get_steps(self, workflow_id: str) -> list[Step]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM workflow_steps WHERE workflow_id = ? ORDER BY position",
            workflow_id,
        )
        return [Step.model_validate_json(r["data"]) for r in rows]

    async def save_step(self, workflow_id: str, step: Step) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_steps SET data = ? WHERE workflow_id = ? AND step_id = ?",
            step.model_dump_json(),
            workflow_id,
            step.id,
        )

    async def replace_steps(self, workflow_id: str, steps: list[Step]) -> None:
        statements: list[tuple[str, tuple[Any, ...]]] = [
            ("DELETE FROM workflow_steps WHERE workflow_id = ?", (workflow_id,))
        ]
        statements.extend(self._step_inserts(workflow_id, steps))
        await asyncio.to_thread(self._executemany, statements)

    async def list_remote_tracked(self) -> list[Workflow]:
        placeholders = ", ".join("?" for _ in _TERMINAL)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT data FROM workflows WHERE remote_ref IS NOT NULL AND status NOT IN ({placeholders}) ORDER BY seq",
            *_TERMINAL,
        )
        return [Workflow.model_validate_json(r["data"]) for r in rows]
