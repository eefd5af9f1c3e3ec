import pytest

from ticketflow import AutoResponder, ErrorKind, WorkflowEngine
from ticketflow.definitions import WorkflowRegistry
from ticketflow.notifications import InMemoryDispatcher
from ticketflow.persistence import AutoResponse, SQLiteWorkflowRepository


WORKFLOWS_YAML = """
- name: Hardware replacement
  category_id: hardware
  steps:
    - name: Triage
      type: auto
    - name: Manager approval
      type: approval
      role: manager
    - name: Swap device
      type: manual
      role: technician
"""


@pytest.mark.asyncio
async def test_ticket_lifecycle_survives_restart(tmp_path):
    db_path = tmp_path / "tickets.db"
    defs_path = tmp_path / "workflows.yaml"
    defs_path.write_text(WORKFLOWS_YAML)

    repo = SQLiteWorkflowRepository(db_path)
    await WorkflowRegistry(repo).create_many(WorkflowRegistry.load_file(defs_path))
    await repo.create_auto_response(
        AutoResponse(
            name="Hardware ack",
            response_template="A technician will contact you shortly.",
            trigger_categories=["hardware"],
        )
    )

    reply = await AutoResponder(repo).find_matching_response(
        "Broken screen", "My monitor flickers", category="hardware"
    )
    assert reply is not None and reply.name == "Hardware ack"

    dispatcher = InMemoryDispatcher()
    engine = WorkflowEngine(repo, dispatcher=dispatcher)
    workflow = (await engine.resolve_workflow_for_category("hardware")).value
    execution_id = (await engine.start_execution(workflow.id, "T-100")).value

    first = await engine.advance(execution_id, user_id="bot", notify="user@example.com")
    assert first.value.status == "in_progress"
    await first.settle()

    # reopen against the same file
    repo = SQLiteWorkflowRepository(db_path)
    engine = WorkflowEngine(repo, dispatcher=dispatcher)
    fetched = await engine.fetch_execution("T-100")
    assert fetched.value.current_step == 1
    assert fetched.value.workflow.name == "Hardware replacement"

    await engine.advance(execution_id, user_id="manager-1")
    last = await engine.advance(execution_id, user_id="tech-1", notify="user@example.com")
    assert last.value.status == "completed"
    assert last.value.current_step == 3
    await last.settle()

    rejected = await engine.advance(execution_id)
    assert rejected.error is ErrorKind.ILLEGAL_TRANSITION

    logs = (await engine.list_logs(execution_id)).value
    assert [entry.step_number for entry in logs] == [0, 1, 2]
    assert [entry.user_id for entry in logs] == ["bot", "manager-1", "tech-1"]
    assert [m.subject for m in dispatcher.outbox] == [
        "Step completed: Triage",
        "Workflow completed: Hardware replacement",
    ]
