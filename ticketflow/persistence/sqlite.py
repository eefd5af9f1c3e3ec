"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..errors import (
    ConcurrencyConflict,
    NotFound,
    TransientIOFailure,
    ValidationRejected,
)
from .inmemory import AUTO_RESPONSE_MUTABLE_FIELDS, EXECUTION_MUTABLE_FIELDS
from .models import (
    AutoResponse,
    ChatbotResponse,
    Workflow,
    WorkflowExecution,
    WorkflowLog,
    WorkflowStep,
)
from .repository import WorkflowRepository

R = TypeVar("R")

_WORKFLOW_COLUMNS = "id, name, description, category_id, steps, is_active, created_at, updated_at"
_EXECUTION_SELECT = """
    SELECT e.id, e.workflow_id, e.ticket_id, e.current_step, e.status,
           e.assigned_to, e.data, e.version, e.created_at, e.updated_at,
           w.id AS w_id, w.name AS w_name, w.description AS w_description,
           w.category_id AS w_category_id, w.steps AS w_steps,
           w.is_active AS w_is_active, w.created_at AS w_created_at,
           w.updated_at AS w_updated_at
    FROM workflow_executions e
    LEFT JOIN workflows w ON w.id = e.workflow_id
"""
_JSON_COLUMNS = {"data", "trigger_keywords", "trigger_categories"}


def _ts(value: datetime) -> str:
    return value.isoformat()


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist ticketing records using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        # one statement at a time on the shared connection
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    category_id TEXT,
                    steps TEXT NOT NULL CHECK (json_array_length(steps) > 0),
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS workflow_executions (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL REFERENCES workflows(id),
                    ticket_id TEXT NOT NULL,
                    current_step INTEGER NOT NULL CHECK (current_step >= 0),
                    status TEXT NOT NULL CHECK (
                        status IN ('pending', 'in_progress', 'completed', 'cancelled')
                    ),
                    assigned_to TEXT,
                    data TEXT NOT NULL DEFAULT '{}',
                    version INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_executions_ticket
                    ON workflow_executions (ticket_id);
                CREATE TABLE IF NOT EXISTS workflow_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workflow_execution_id TEXT NOT NULL
                        REFERENCES workflow_executions(id),
                    step_number INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    notes TEXT,
                    user_id TEXT,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS chatbot_responses (
                    id TEXT PRIMARY KEY,
                    question TEXT NOT NULL,
                    answer TEXT NOT NULL,
                    keywords TEXT NOT NULL DEFAULT '[]',
                    category TEXT,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1
                );
                CREATE TABLE IF NOT EXISTS auto_responses (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    trigger_keywords TEXT NOT NULL DEFAULT '[]',
                    trigger_categories TEXT NOT NULL DEFAULT '[]',
                    response_template TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    priority INTEGER NOT NULL DEFAULT 0
                );
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(query, params)
            return cur.rowcount

    def _executemany(self, query: str, rows: list[tuple]) -> None:
        with self._lock, self._conn:
            self._conn.executemany(query, rows)

    def _insert(self, query: str, *params: Any) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(query, params)
            return cur.lastrowid

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    def _conditional_update(
        self, table: str, row_id: str, sets: dict[str, Any], version: int | None
    ) -> int | None:
        """Run a guarded UPDATE; return None when the row does not exist."""
        assignments = ", ".join(f"{col} = ?" for col in sets)
        query = f"UPDATE {table} SET {assignments} WHERE id = ?"
        params = [*sets.values(), row_id]
        if version is not None:
            query += " AND version = ?"
            params.append(version)
        with self._lock, self._conn:
            cur = self._conn.execute(query, params)
            if cur.rowcount:
                return cur.rowcount
            exists = self._conn.execute(
                f"SELECT 1 FROM {table} WHERE id = ?", (row_id,)
            ).fetchone()
            return 0 if exists else None

    async def _run(self, fn: Callable[..., R], *args: Any) -> R:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.IntegrityError as e:
            raise ValidationRejected(str(e)) from e
        except sqlite3.Error as e:
            raise TransientIOFailure(str(e)) from e

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _workflow_from_row(row: sqlite3.Row, prefix: str = "") -> Workflow:
        return Workflow(
            id=row[f"{prefix}id"],
            name=row[f"{prefix}name"],
            description=row[f"{prefix}description"],
            category_id=row[f"{prefix}category_id"],
            steps=[WorkflowStep.model_validate(s) for s in json.loads(row[f"{prefix}steps"])],
            is_active=bool(row[f"{prefix}is_active"]),
            created_at=datetime.fromisoformat(row[f"{prefix}created_at"]),
            updated_at=datetime.fromisoformat(row[f"{prefix}updated_at"]),
        )

    def _execution_from_row(self, row: sqlite3.Row) -> WorkflowExecution:
        return WorkflowExecution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            ticket_id=row["ticket_id"],
            current_step=row["current_step"],
            status=row["status"],
            assigned_to=row["assigned_to"],
            data=json.loads(row["data"]) if row["data"] else {},
            version=row["version"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            workflow=self._workflow_from_row(row, "w_") if row["w_id"] else None,
        )

    @staticmethod
    def _workflow_params(wf: Workflow) -> tuple:
        return (
            wf.id,
            wf.name,
            wf.description,
            wf.category_id,
            json.dumps([s.model_dump(mode="json") for s in wf.steps]),
            int(wf.is_active),
            _ts(wf.created_at),
            _ts(wf.updated_at),
        )

    @staticmethod
    def _chatbot_from_row(row: sqlite3.Row) -> ChatbotResponse:
        return ChatbotResponse(
            id=row["id"],
            question=row["question"],
            answer=row["answer"],
            keywords=json.loads(row["keywords"]),
            category=row["category"],
            usage_count=row["usage_count"],
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _auto_from_row(row: sqlite3.Row) -> AutoResponse:
        return AutoResponse(
            id=row["id"],
            name=row["name"],
            trigger_keywords=json.loads(row["trigger_keywords"]),
            trigger_categories=json.loads(row["trigger_categories"]),
            response_template=row["response_template"],
            is_active=bool(row["is_active"]),
            priority=row["priority"],
        )

    # ------------------------------------------------------------------
    # Workflow definitions
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        await self._run(
            self._execute,
            f"INSERT INTO workflows ({_WORKFLOW_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            *self._workflow_params(workflow),
        )
        return workflow

    async def create_workflows(self, workflows: list[Workflow]) -> list[Workflow]:
        await self._run(
            self._executemany,
            f"INSERT INTO workflows ({_WORKFLOW_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [self._workflow_params(wf) for wf in workflows],
        )
        return workflows

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = ?",
            workflow_id,
        )
        return self._workflow_from_row(row) if row else None

    async def find_workflows(
        self, category_id: str | None = None, active_only: bool = True
    ) -> list[Workflow]:
        query = f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE 1 = 1"
        params: list[Any] = []
        if active_only:
            query += " AND is_active = 1"
        if category_id is not None:
            query += " AND category_id = ?"
            params.append(category_id)
        query += " ORDER BY name, rowid"
        rows = await self._run(self._fetchall, query, *params)
        return [self._workflow_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        await self._run(
            self._execute,
            """
            INSERT INTO workflow_executions
                (id, workflow_id, ticket_id, current_step, status, assigned_to,
                 data, version, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            execution.id,
            execution.workflow_id,
            execution.ticket_id,
            execution.current_step,
            execution.status,
            execution.assigned_to,
            json.dumps(execution.data),
            execution.version,
            _ts(execution.created_at),
            _ts(execution.updated_at),
        )
        created = await self.get_execution(execution.id)
        if created is None:
            raise TransientIOFailure(f"Execution {execution.id} vanished after insert")
        return created

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await self._run(
            self._fetchone, _EXECUTION_SELECT + " WHERE e.id = ?", execution_id
        )
        return self._execution_from_row(row) if row else None

    async def find_executions(
        self, ticket_id: str | None = None
    ) -> list[WorkflowExecution]:
        query = _EXECUTION_SELECT
        params: list[Any] = []
        if ticket_id is not None:
            query += " WHERE e.ticket_id = ?"
            params.append(ticket_id)
        query += " ORDER BY e.created_at DESC, e.rowid DESC"
        rows = await self._run(self._fetchall, query, *params)
        return [self._execution_from_row(r) for r in rows]

    async def update_execution(
        self, execution_id: str, expected_version: int, changes: dict[str, Any]
    ) -> WorkflowExecution:
        unknown = set(changes) - EXECUTION_MUTABLE_FIELDS
        if unknown:
            raise ValidationRejected(f"Cannot update fields: {sorted(unknown)}")
        sets = {
            col: json.dumps(value) if col in _JSON_COLUMNS else value
            for col, value in changes.items()
        }
        sets["version"] = expected_version + 1
        sets["updated_at"] = _ts(datetime.now(timezone.utc))
        updated = await self._run(
            self._conditional_update,
            "workflow_executions",
            execution_id,
            sets,
            expected_version,
        )
        if updated is None:
            raise NotFound(f"Execution {execution_id} not found")
        if updated == 0:
            raise ConcurrencyConflict(
                f"Execution {execution_id} is no longer at version {expected_version}"
            )
        result = await self.get_execution(execution_id)
        if result is None:
            raise NotFound(f"Execution {execution_id} not found")
        return result

    # ------------------------------------------------------------------
    # Audit log
    async def append_log(self, entry: WorkflowLog) -> WorkflowLog:
        log_id = await self._run(
            self._insert,
            """
            INSERT INTO workflow_logs
                (workflow_execution_id, step_number, action, notes, user_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            entry.workflow_execution_id,
            entry.step_number,
            entry.action,
            entry.notes,
            entry.user_id,
            _ts(entry.created_at),
        )
        return entry.model_copy(update={"id": log_id})

    async def list_logs(self, execution_id: str) -> list[WorkflowLog]:
        rows = await self._run(
            self._fetchall,
            """
            SELECT id, workflow_execution_id, step_number, action, notes, user_id, created_at
            FROM workflow_logs WHERE workflow_execution_id = ? ORDER BY step_number, id
            """,
            execution_id,
        )
        return [
            WorkflowLog(
                id=r["id"],
                workflow_execution_id=r["workflow_execution_id"],
                step_number=r["step_number"],
                action=r["action"],
                notes=r["notes"],
                user_id=r["user_id"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Matcher candidates
    async def create_chatbot_response(self, response: ChatbotResponse) -> ChatbotResponse:
        await self._run(
            self._execute,
            """
            INSERT INTO chatbot_responses
                (id, question, answer, keywords, category, usage_count, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            response.id,
            response.question,
            response.answer,
            json.dumps(response.keywords),
            response.category,
            response.usage_count,
            int(response.is_active),
        )
        return response

    async def list_chatbot_responses(
        self, active_only: bool = True, by_usage: bool = False
    ) -> list[ChatbotResponse]:
        query = "SELECT * FROM chatbot_responses"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY usage_count DESC, rowid" if by_usage else " ORDER BY rowid"
        rows = await self._run(self._fetchall, query)
        return [self._chatbot_from_row(r) for r in rows]

    async def increment_chatbot_usage(self, response_id: str) -> None:
        updated = await self._run(
            self._execute,
            "UPDATE chatbot_responses SET usage_count = usage_count + 1 WHERE id = ?",
            response_id,
        )
        if not updated:
            raise NotFound(f"Chatbot response {response_id} not found")

    async def create_auto_response(self, response: AutoResponse) -> AutoResponse:
        await self._run(
            self._execute,
            """
            INSERT INTO auto_responses
                (id, name, trigger_keywords, trigger_categories, response_template,
                 is_active, priority)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            response.id,
            response.name,
            json.dumps(response.trigger_keywords),
            json.dumps(response.trigger_categories),
            response.response_template,
            int(response.is_active),
            response.priority,
        )
        return response

    async def list_auto_responses(self, active_only: bool = True) -> list[AutoResponse]:
        query = "SELECT * FROM auto_responses"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY priority, rowid"
        rows = await self._run(self._fetchall, query)
        return [self._auto_from_row(r) for r in rows]

    async def update_auto_response(
        self, response_id: str, changes: dict[str, Any]
    ) -> AutoResponse:
        unknown = set(changes) - AUTO_RESPONSE_MUTABLE_FIELDS
        if unknown:
            raise ValidationRejected(f"Cannot update fields: {sorted(unknown)}")
        if changes:
            sets = {
                col: json.dumps(value)
                if col in _JSON_COLUMNS
                else int(value)
                if col == "is_active"
                else value
                for col, value in changes.items()
            }
            updated = await self._run(
                self._conditional_update, "auto_responses", response_id, sets, None
            )
            if updated is None:
                raise NotFound(f"Auto response {response_id} not found")
        row = await self._run(
            self._fetchone, "SELECT * FROM auto_responses WHERE id = ?", response_id
        )
        if row is None:
            raise NotFound(f"Auto response {response_id} not found")
        return self._auto_from_row(row)

    async def delete_auto_response(self, response_id: str) -> None:
        deleted = await self._run(
            self._execute, "DELETE FROM auto_responses WHERE id = ?", response_id
        )
        if not deleted:
            raise NotFound(f"Auto response {response_id} not found")
