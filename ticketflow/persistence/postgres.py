"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import asyncpg

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

_WORKFLOW_COLUMNS = "id, name, description, category_id, steps, is_active, created_at, updated_at"
_WORKFLOW_INSERT = (
    f"INSERT INTO workflows ({_WORKFLOW_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)"
)
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


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist ticketing records using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False
        # first connections must not run CREATE TABLE concurrently
        self._schema_lock = asyncio.Lock()

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        await conn.set_type_codec(
            "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )
        if not self._initialized:
            try:
                async with self._schema_lock:
                    if not self._initialized:
                        await self._ensure_schema(conn)
                        self._initialized = True
            except BaseException:
                await conn.close()
                raise
        return conn

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            conn = await self._connect()
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise TransientIOFailure(str(e)) from e
        try:
            yield conn
        except asyncpg.IntegrityConstraintViolationError as e:
            raise ValidationRejected(str(e)) from e
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise TransientIOFailure(str(e)) from e
        finally:
            await conn.close()

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                category_id TEXT,
                steps JSONB NOT NULL CHECK (jsonb_array_length(steps) > 0),
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL REFERENCES workflows(id),
                ticket_id TEXT NOT NULL,
                current_step INTEGER NOT NULL CHECK (current_step >= 0),
                status TEXT NOT NULL CHECK (
                    status IN ('pending', 'in_progress', 'completed', 'cancelled')
                ),
                assigned_to TEXT,
                data JSONB NOT NULL DEFAULT '{}'::jsonb,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_logs (
                id SERIAL PRIMARY KEY,
                workflow_execution_id TEXT NOT NULL
                    REFERENCES workflow_executions(id),
                step_number INTEGER NOT NULL,
                action TEXT NOT NULL,
                notes TEXT,
                user_id TEXT,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chatbot_responses (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                question TEXT NOT NULL,
                answer TEXT NOT NULL,
                keywords JSONB NOT NULL DEFAULT '[]'::jsonb,
                category TEXT,
                usage_count INTEGER NOT NULL DEFAULT 0,
                is_active BOOLEAN NOT NULL DEFAULT TRUE
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS auto_responses (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                trigger_keywords JSONB NOT NULL DEFAULT '[]'::jsonb,
                trigger_categories JSONB NOT NULL DEFAULT '[]'::jsonb,
                response_template TEXT NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                priority INTEGER NOT NULL DEFAULT 0
            )
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _workflow_from_record(r: asyncpg.Record, prefix: str = "") -> Workflow:
        return Workflow(
            id=r[f"{prefix}id"],
            name=r[f"{prefix}name"],
            description=r[f"{prefix}description"],
            category_id=r[f"{prefix}category_id"],
            steps=[WorkflowStep.model_validate(s) for s in r[f"{prefix}steps"]],
            is_active=r[f"{prefix}is_active"],
            created_at=r[f"{prefix}created_at"],
            updated_at=r[f"{prefix}updated_at"],
        )

    def _execution_from_record(self, r: asyncpg.Record) -> WorkflowExecution:
        return WorkflowExecution(
            id=r["id"],
            workflow_id=r["workflow_id"],
            ticket_id=r["ticket_id"],
            current_step=r["current_step"],
            status=r["status"],
            assigned_to=r["assigned_to"],
            data=r["data"] or {},
            version=r["version"],
            created_at=r["created_at"],
            updated_at=r["updated_at"],
            workflow=self._workflow_from_record(r, "w_") if r["w_id"] else None,
        )

    @staticmethod
    def _workflow_args(wf: Workflow) -> tuple:
        return (
            wf.id,
            wf.name,
            wf.description,
            wf.category_id,
            [s.model_dump(mode="json") for s in wf.steps],
            wf.is_active,
            wf.created_at,
            wf.updated_at,
        )

    @staticmethod
    def _chatbot_from_record(r: asyncpg.Record) -> ChatbotResponse:
        return ChatbotResponse(
            id=r["id"],
            question=r["question"],
            answer=r["answer"],
            keywords=r["keywords"],
            category=r["category"],
            usage_count=r["usage_count"],
            is_active=r["is_active"],
        )

    @staticmethod
    def _auto_from_record(r: asyncpg.Record) -> AutoResponse:
        return AutoResponse(
            id=r["id"],
            name=r["name"],
            trigger_keywords=r["trigger_keywords"],
            trigger_categories=r["trigger_categories"],
            response_template=r["response_template"],
            is_active=r["is_active"],
            priority=r["priority"],
        )

    # ------------------------------------------------------------------
    # Workflow definitions
    async def create_workflow(self, workflow: Workflow) -> Workflow:
        async with self._connection() as conn:
            await conn.execute(_WORKFLOW_INSERT, *self._workflow_args(workflow))
        return workflow

    async def create_workflows(self, workflows: list[Workflow]) -> list[Workflow]:
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.executemany(
                    _WORKFLOW_INSERT, [self._workflow_args(wf) for wf in workflows]
                )
        return workflows

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = $1", workflow_id
            )
        return self._workflow_from_record(row) if row else None

    async def find_workflows(
        self, category_id: str | None = None, active_only: bool = True
    ) -> list[Workflow]:
        query = f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE TRUE"
        args: list[Any] = []
        if active_only:
            query += " AND is_active"
        if category_id is not None:
            args.append(category_id)
            query += f" AND category_id = ${len(args)}"
        query += " ORDER BY name, seq"
        async with self._connection() as conn:
            rows = await conn.fetch(query, *args)
        return [self._workflow_from_record(r) for r in rows]

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO workflow_executions
                    (id, workflow_id, ticket_id, current_step, status, assigned_to,
                     data, version, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                execution.id,
                execution.workflow_id,
                execution.ticket_id,
                execution.current_step,
                execution.status,
                execution.assigned_to,
                execution.data,
                execution.version,
                execution.created_at,
                execution.updated_at,
            )
            row = await conn.fetchrow(_EXECUTION_SELECT + " WHERE e.id = $1", execution.id)
        return self._execution_from_record(row)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(_EXECUTION_SELECT + " WHERE e.id = $1", execution_id)
        return self._execution_from_record(row) if row else None

    async def find_executions(
        self, ticket_id: str | None = None
    ) -> list[WorkflowExecution]:
        query = _EXECUTION_SELECT
        args: list[Any] = []
        if ticket_id is not None:
            query += " WHERE e.ticket_id = $1"
            args.append(ticket_id)
        query += " ORDER BY e.created_at DESC, e.seq DESC"
        async with self._connection() as conn:
            rows = await conn.fetch(query, *args)
        return [self._execution_from_record(r) for r in rows]

    async def update_execution(
        self, execution_id: str, expected_version: int, changes: dict[str, Any]
    ) -> WorkflowExecution:
        unknown = set(changes) - EXECUTION_MUTABLE_FIELDS
        if unknown:
            raise ValidationRejected(f"Cannot update fields: {sorted(unknown)}")
        sets = dict(changes)
        sets["version"] = expected_version + 1
        sets["updated_at"] = datetime.now(timezone.utc)
        assignments = ", ".join(f"{col} = ${i}" for i, col in enumerate(sets, start=1))
        n = len(sets)
        async with self._connection() as conn:
            updated = await conn.fetchval(
                f"UPDATE workflow_executions SET {assignments} "
                f"WHERE id = ${n + 1} AND version = ${n + 2} RETURNING id",
                *sets.values(),
                execution_id,
                expected_version,
            )
            if updated is None:
                exists = await conn.fetchval(
                    "SELECT 1 FROM workflow_executions WHERE id = $1", execution_id
                )
                if not exists:
                    raise NotFound(f"Execution {execution_id} not found")
                raise ConcurrencyConflict(
                    f"Execution {execution_id} is no longer at version {expected_version}"
                )
            row = await conn.fetchrow(_EXECUTION_SELECT + " WHERE e.id = $1", execution_id)
        return self._execution_from_record(row)

    # ------------------------------------------------------------------
    # Audit log
    async def append_log(self, entry: WorkflowLog) -> WorkflowLog:
        async with self._connection() as conn:
            log_id = await conn.fetchval(
                """
                INSERT INTO workflow_logs
                    (workflow_execution_id, step_number, action, notes, user_id, created_at)
                VALUES ($1, $2, $3, $4, $5, $6) RETURNING id
                """,
                entry.workflow_execution_id,
                entry.step_number,
                entry.action,
                entry.notes,
                entry.user_id,
                entry.created_at,
            )
        return entry.model_copy(update={"id": log_id})

    async def list_logs(self, execution_id: str) -> list[WorkflowLog]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT id, workflow_execution_id, step_number, action, notes, user_id, created_at
                FROM workflow_logs WHERE workflow_execution_id = $1 ORDER BY step_number, id
                """,
                execution_id,
            )
        return [WorkflowLog(**dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Matcher candidates
    async def create_chatbot_response(self, response: ChatbotResponse) -> ChatbotResponse:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO chatbot_responses
                    (id, question, answer, keywords, category, usage_count, is_active)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                response.id,
                response.question,
                response.answer,
                response.keywords,
                response.category,
                response.usage_count,
                response.is_active,
            )
        return response

    async def list_chatbot_responses(
        self, active_only: bool = True, by_usage: bool = False
    ) -> list[ChatbotResponse]:
        query = "SELECT * FROM chatbot_responses"
        if active_only:
            query += " WHERE is_active"
        query += " ORDER BY usage_count DESC, seq" if by_usage else " ORDER BY seq"
        async with self._connection() as conn:
            rows = await conn.fetch(query)
        return [self._chatbot_from_record(r) for r in rows]

    async def increment_chatbot_usage(self, response_id: str) -> None:
        async with self._connection() as conn:
            updated = await conn.fetchval(
                "UPDATE chatbot_responses SET usage_count = usage_count + 1 "
                "WHERE id = $1 RETURNING id",
                response_id,
            )
        if updated is None:
            raise NotFound(f"Chatbot response {response_id} not found")

    async def create_auto_response(self, response: AutoResponse) -> AutoResponse:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO auto_responses
                    (id, name, trigger_keywords, trigger_categories, response_template,
                     is_active, priority)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                response.id,
                response.name,
                response.trigger_keywords,
                response.trigger_categories,
                response.response_template,
                response.is_active,
                response.priority,
            )
        return response

    async def list_auto_responses(self, active_only: bool = True) -> list[AutoResponse]:
        query = "SELECT * FROM auto_responses"
        if active_only:
            query += " WHERE is_active"
        query += " ORDER BY priority, seq"
        async with self._connection() as conn:
            rows = await conn.fetch(query)
        return [self._auto_from_record(r) for r in rows]

    async def update_auto_response(
        self, response_id: str, changes: dict[str, Any]
    ) -> AutoResponse:
        unknown = set(changes) - AUTO_RESPONSE_MUTABLE_FIELDS
        if unknown:
            raise ValidationRejected(f"Cannot update fields: {sorted(unknown)}")
        async with self._connection() as conn:
            if changes:
                assignments = ", ".join(
                    f"{col} = ${i}" for i, col in enumerate(changes, start=1)
                )
                await conn.execute(
                    f"UPDATE auto_responses SET {assignments} WHERE id = ${len(changes) + 1}",
                    *changes.values(),
                    response_id,
                )
            row = await conn.fetchrow(
                "SELECT * FROM auto_responses WHERE id = $1", response_id
            )
        if row is None:
            raise NotFound(f"Auto response {response_id} not found")
        return self._auto_from_record(row)

    async def delete_auto_response(self, response_id: str) -> None:
        async with self._connection() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM auto_responses WHERE id = $1 RETURNING id", response_id
            )
        if deleted is None:
            raise NotFound(f"Auto response {response_id} not found")
