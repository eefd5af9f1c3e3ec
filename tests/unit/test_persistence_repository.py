import pytest

from ticketflow.errors import ConcurrencyConflict, NotFound, ValidationRejected
from ticketflow.persistence import (
    AutoResponse,
    ChatbotResponse,
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    Workflow,
    WorkflowExecution,
    WorkflowLog,
    WorkflowStep,
)


def _workflow(name="Laptop request", category_id="hardware", **kwargs) -> Workflow:
    return Workflow(
        name=name,
        category_id=category_id,
        description="Order and ship a laptop",
        steps=[
            WorkflowStep(name="Triage", kind="auto"),
            WorkflowStep(name="Approve", kind="approval", role="manager"),
            WorkflowStep(name="Ship", kind="manual", role="technician"),
        ],
        **kwargs,
    )


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryWorkflowRepository()
    return SQLiteWorkflowRepository(tmp_path / "tickets.db")


@pytest.mark.asyncio
async def test_workflow_crud(repo):
    wf = _workflow()
    await repo.create_workflow(wf)
    await repo.create_workflow(_workflow(name="Archived", is_active=False))
    await repo.create_workflow(_workflow(name="Access request", category_id="access"))

    stored = await repo.get_workflow(wf.id)
    assert stored is not None
    assert stored.name == "Laptop request"
    assert [s.kind for s in stored.steps] == ["auto", "approval", "manual"]
    assert stored.steps[1].role == "manager"

    active = await repo.find_workflows()
    assert [w.name for w in active] == ["Access request", "Laptop request"]
    everything = await repo.find_workflows(active_only=False)
    assert len(everything) == 3
    hardware = await repo.find_workflows(category_id="hardware")
    assert [w.id for w in hardware] == [wf.id]
    assert await repo.get_workflow("missing") is None


@pytest.mark.asyncio
async def test_store_rejects_empty_and_duplicate_workflows(repo):
    with pytest.raises(ValidationRejected):
        await repo.create_workflow(Workflow(name="Empty", steps=[]))
    wf = _workflow()
    await repo.create_workflow(wf)
    with pytest.raises(ValidationRejected):
        await repo.create_workflow(wf)


@pytest.mark.asyncio
async def test_bulk_workflow_insert_is_all_or_nothing(repo):
    good = _workflow(name="Good")
    bad = Workflow(name="Bad", steps=[])
    with pytest.raises(ValidationRejected):
        await repo.create_workflows([good, bad])
    assert await repo.find_workflows(active_only=False) == []

    created = await repo.create_workflows([good, _workflow(name="Other")])
    assert len(created) == 2


@pytest.mark.asyncio
async def test_execution_lifecycle(repo):
    wf = _workflow()
    await repo.create_workflow(wf)
    created = await repo.create_execution(
        WorkflowExecution(workflow_id=wf.id, ticket_id="T1", data={"priority": "high"})
    )
    assert created.workflow is not None
    assert created.workflow.id == wf.id
    assert created.version == 1

    updated = await repo.update_execution(
        created.id, 1, {"current_step": 1, "status": "in_progress", "data": {"sla": 4}}
    )
    assert updated.version == 2
    assert updated.current_step == 1
    assert updated.status == "in_progress"
    assert updated.data == {"sla": 4}

    with pytest.raises(ConcurrencyConflict):
        await repo.update_execution(created.id, 1, {"current_step": 2})
    with pytest.raises(NotFound):
        await repo.update_execution("missing", 1, {"current_step": 2})
    with pytest.raises(ValidationRejected):
        await repo.update_execution(created.id, 2, {"ticket_id": "T2"})

    by_ticket = await repo.find_executions(ticket_id="T1")
    assert [e.id for e in by_ticket] == [created.id]
    assert await repo.find_executions(ticket_id="T9") == []


@pytest.mark.asyncio
async def test_execution_requires_existing_workflow(repo):
    with pytest.raises(ValidationRejected):
        await repo.create_execution(WorkflowExecution(workflow_id="nope", ticket_id="T1"))


@pytest.mark.asyncio
async def test_logs_are_appended_in_order(repo):
    wf = _workflow()
    await repo.create_workflow(wf)
    ex = await repo.create_execution(WorkflowExecution(workflow_id=wf.id, ticket_id="T1"))

    first = await repo.append_log(
        WorkflowLog(workflow_execution_id=ex.id, step_number=0, action="step_completed")
    )
    second = await repo.append_log(
        WorkflowLog(
            workflow_execution_id=ex.id,
            step_number=1,
            action="step_completed",
            notes="ok",
            user_id="u1",
        )
    )
    assert first.id is not None and second.id > first.id

    logs = await repo.list_logs(ex.id)
    assert [(l.step_number, l.notes, l.user_id) for l in logs] == [
        (0, None, None),
        (1, "ok", "u1"),
    ]
    with pytest.raises(ValidationRejected):
        await repo.append_log(
            WorkflowLog(workflow_execution_id="missing", step_number=0, action="x")
        )


@pytest.mark.asyncio
async def test_logs_are_listed_by_step_then_insertion(repo):
    wf = _workflow()
    await repo.create_workflow(wf)
    ex = await repo.create_execution(WorkflowExecution(workflow_id=wf.id, ticket_id="T1"))

    for step, action in [(1, "step_completed"), (0, "step_completed"), (1, "cancelled")]:
        await repo.append_log(
            WorkflowLog(workflow_execution_id=ex.id, step_number=step, action=action)
        )

    logs = await repo.list_logs(ex.id)
    assert [(l.step_number, l.action) for l in logs] == [
        (0, "step_completed"),
        (1, "step_completed"),
        (1, "cancelled"),
    ]


@pytest.mark.asyncio
async def test_chatbot_responses(repo):
    first = ChatbotResponse(question="Reset password", answer="Use the portal", keywords=["password"])
    second = ChatbotResponse(question="VPN", answer="Install the client", keywords=["vpn"])
    hidden = ChatbotResponse(question="Old", answer="-", keywords=["old"], is_active=False)
    for response in (first, second, hidden):
        await repo.create_chatbot_response(response)

    await repo.increment_chatbot_usage(second.id)
    await repo.increment_chatbot_usage(second.id)
    with pytest.raises(NotFound):
        await repo.increment_chatbot_usage("missing")

    active = await repo.list_chatbot_responses()
    assert [r.id for r in active] == [first.id, second.id]
    by_usage = await repo.list_chatbot_responses(active_only=False, by_usage=True)
    assert by_usage[0].id == second.id
    assert by_usage[0].usage_count == 2
    assert len(by_usage) == 3


@pytest.mark.asyncio
async def test_auto_responses(repo):
    late = AutoResponse(name="late", trigger_keywords=["a"], response_template="t", priority=5)
    early = AutoResponse(name="early", trigger_categories=["Hardware"], response_template="t", priority=1)
    await repo.create_auto_response(late)
    await repo.create_auto_response(early)

    assert [r.name for r in await repo.list_auto_responses()] == ["early", "late"]

    updated = await repo.update_auto_response(late.id, {"priority": 0, "is_active": False})
    assert updated.priority == 0
    assert not updated.is_active
    assert [r.name for r in await repo.list_auto_responses()] == ["early"]
    assert [r.name for r in await repo.list_auto_responses(active_only=False)] == ["late", "early"]

    with pytest.raises(NotFound):
        await repo.update_auto_response("missing", {"priority": 1})
    await repo.delete_auto_response(late.id)
    with pytest.raises(NotFound):
        await repo.delete_auto_response(late.id)


@pytest.mark.asyncio
async def test_sqlite_persists_across_connections(tmp_path):
    path = tmp_path / "tickets.db"
    repo = SQLiteWorkflowRepository(path)
    wf = _workflow()
    await repo.create_workflow(wf)
    ex = await repo.create_execution(WorkflowExecution(workflow_id=wf.id, ticket_id="T1"))
    await repo.update_execution(ex.id, 1, {"current_step": 1, "status": "in_progress"})

    reopened = SQLiteWorkflowRepository(path)
    stored = await reopened.get_execution(ex.id)
    assert stored.current_step == 1
    assert stored.version == 2
    assert stored.workflow.steps == wf.steps
