"""Tests for WorkflowEngine: transitions, fan-out and trigger execution."""

import asyncio

import pytest
from conftest import ORG, OTHER_ORG

from pystatewise.engine import JobClient
from pystatewise.errors import (
    ActionFailures,
    ChannelError,
    InvalidTransition,
    MissingDestination,
    NotFound,
)
from pystatewise.models import (
    EXECUTE_TRIGGER,
    Action,
    ActionType,
    BudgetContext,
    Channel,
    EventType,
    JobStatus,
    MessageTemplate,
    OccurrenceStatus,
    Priority,
    Trigger,
    TriggerType,
)


@pytest.mark.asyncio
async def test_budget_approval_scenario(components, budget_workflow):
    """sent -> approved persists, enqueues one job and sends one email."""
    engine, queue, sender = components.engine, components.queue, components.sender

    result = await engine.request_transition(ORG, "budget", "B1", "approved")

    assert result.from_state == "sent"
    assert result.to_state == "approved"
    assert len(result.job_ids) == 1

    budget = await components.store.get_entity(ORG, "budget", "B1")
    assert budget.current_state == "approved"

    jobs = await queue.list_jobs()
    assert len(jobs) == 1
    job = jobs[0]
    assert job.job_id == result.job_ids[0]
    assert job.job_type == EXECUTE_TRIGGER
    assert job.priority == Priority.CRITICAL
    assert job.payload["trigger_id"] == budget_workflow.trigger.id
    assert job.payload["entity_id"] == "B1"

    assert await components.worker.drain() == 1

    assert sender.emails == [
        ("manuel@example.com", "Orçamento ORC-2025-001", "Orçamento aprovado: 1234.50")
    ]
    assert (await queue.get_job(job.job_id)).status == JobStatus.COMPLETE


@pytest.mark.asyncio
async def test_invalid_transition_leaves_entity_untouched(components, budget_workflow):
    with pytest.raises(InvalidTransition) as exc_info:
        await components.engine.request_transition(ORG, "budget", "B1", "nonexistent")

    assert exc_info.value.from_state == "sent"
    budget = await components.store.get_entity(ORG, "budget", "B1")
    assert budget.current_state == "sent"
    assert await components.queue.list_jobs() == []


@pytest.mark.asyncio
async def test_no_implicit_transition_from_final_state(components, budget_workflow):
    await components.engine.request_transition(ORG, "budget", "B1", "approved")

    with pytest.raises(InvalidTransition):
        await components.engine.request_transition(ORG, "budget", "B1", "sent")


@pytest.mark.asyncio
async def test_transition_is_organization_scoped(components, budget_workflow):
    with pytest.raises(NotFound):
        await components.engine.request_transition(OTHER_ORG, "budget", "B1", "approved")


@pytest.mark.asyncio
async def test_unknown_entity(components, budget_workflow):
    with pytest.raises(NotFound):
        await components.engine.request_transition(ORG, "budget", "B404", "approved")


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_concurrent_transitions_one_wins(components, budget_workflow):
    results = await asyncio.gather(
        components.engine.request_transition(ORG, "budget", "B1", "approved"),
        components.engine.request_transition(ORG, "budget", "B1", "rejected"),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, InvalidTransition)]
    assert len(winners) == 1
    assert len(losers) == 1


@pytest.mark.asyncio
async def test_fan_out_one_job_per_trigger_exit_first(components, budget_workflow):
    store, graph = components.store, budget_workflow.graph
    await store.save_trigger(
        Trigger(
            id="trg-exit-sent",
            graph_id=graph.id,
            organization_id=ORG,
            trigger_type=TriggerType.ON_EXIT,
            state_id=graph.state_by_name("sent").id,
        )
    )
    await store.save_trigger(
        Trigger(
            id="trg-via-approve",
            graph_id=graph.id,
            organization_id=ORG,
            trigger_type=TriggerType.ON_ENTER,
            transition_id=graph.find_transition("sent", "approved").id,
        )
    )

    result = await components.engine.request_transition(ORG, "budget", "B1", "approved")

    assert len(result.job_ids) == 3
    jobs = [await components.queue.get_job(job_id) for job_id in result.job_ids]
    assert jobs[0].payload["trigger_id"] == "trg-exit-sent"
    assert {j.payload["trigger_id"] for j in jobs[1:]} == {"trg-approved", "trg-via-approve"}
    assert all(j.priority == Priority.CRITICAL for j in jobs)


@pytest.mark.asyncio
async def test_transition_logs_state_change(components, budget_workflow):
    await components.engine.request_transition(ORG, "budget", "B1", "approved")

    events = await components.store.list_events(ORG, "budget", "B1")
    state_changes = [e for e in events if e.event_type == EventType.STATE_CHANGE]
    assert len(state_changes) == 1
    assert state_changes[0].from_state == "sent"
    assert state_changes[0].to_state == "approved"
    assert state_changes[0].graph_id == budget_workflow.graph.id


@pytest.mark.asyncio
async def test_transition_keeps_queued_time_trigger(components, budget_workflow):
    from datetime import UTC, datetime

    await components.store.save_trigger(
        Trigger(
            id="trg-followup",
            graph_id=budget_workflow.graph.id,
            organization_id=ORG,
            trigger_type=TriggerType.TIME_AFTER,
            time_offset_minutes=0,
        )
    )
    await components.store.save_action(
        Action(
            id="act-followup-email",
            trigger_id="trg-followup",
            action_type=ActionType.SEND_EMAIL,
            action_order=1,
            template_id=budget_workflow.template.id,
        )
    )

    # Due at the budget's created_at; claimed and queued before the transition
    scanned_at = datetime(2025, 1, 10, 9, 0, 30, tzinfo=UTC)
    assert await components.scheduler.process_pending_jobs(scanned_at) == 1

    await components.engine.request_transition(ORG, "budget", "B1", "approved")

    row = await components.store.get_occurrence("trg-followup", "B1", "2025-01-10T09:00Z")
    assert row.status == OccurrenceStatus.CLAIMED

    assert await components.worker.drain() == 2

    row = await components.store.get_occurrence("trg-followup", "B1", "2025-01-10T09:00Z")
    assert row.status == OccurrenceStatus.FIRED
    assert len(components.sender.emails) == 2


@pytest.mark.asyncio
async def test_initialize_entity_enters_initial_state(components, budget_workflow):
    store, graph = components.store, budget_workflow.graph
    await store.save_trigger(
        Trigger(
            id="trg-enter-draft",
            graph_id=graph.id,
            organization_id=ORG,
            trigger_type=TriggerType.ON_ENTER,
            state_id=graph.state_by_name("draft").id,
        )
    )
    await store.save_entity(BudgetContext(entity_id="B2", organization_id=ORG))

    result = await components.engine.initialize_entity(ORG, "budget", "B2")

    assert result.from_state is None
    assert result.to_state == "draft"
    assert len(result.job_ids) == 1
    assert (await store.get_entity(ORG, "budget", "B2")).current_state == "draft"

    with pytest.raises(InvalidTransition):
        await components.engine.initialize_entity(ORG, "budget", "B2")


@pytest.mark.asyncio
async def test_entity_without_state_cannot_transition(components, budget_workflow):
    await components.store.save_entity(BudgetContext(entity_id="B3", organization_id=ORG))

    with pytest.raises(InvalidTransition):
        await components.engine.request_transition(ORG, "budget", "B3", "sent")


@pytest.mark.asyncio
async def test_available_transitions(components, budget_workflow):
    states = await components.engine.available_transitions(ORG, "budget", "B1")
    assert sorted(s.name for s in states) == ["approved", "draft", "rejected"]


# ==============================================================================
# execute_trigger_by_id
# ==============================================================================


async def _add_actions(store, trigger_id: str, *actions: Action) -> None:
    for action in actions:
        await store.save_action(action)


@pytest.mark.asyncio
async def test_actions_run_in_order_and_failure_does_not_stop_the_rest(components, budget_workflow):
    """Action 2 of 3 fails: actions 1 and 3 still run, the error is reported."""
    store, sender = components.store, components.sender
    await store.save_template(
        MessageTemplate(id="tpl-wa", organization_id=ORG, channel=Channel.WHATSAPP, body="Olá {{client_name}}")
    )
    await _add_actions(
        store,
        "trg-x",
        Action(
            id="a3",
            trigger_id="trg-x",
            action_type=ActionType.CREATE_TASK,
            action_order=3,
            action_config={"title": "Follow up {{budget_number}}"},
        ),
        Action(
            id="a1",
            trigger_id="trg-x",
            action_type=ActionType.SEND_EMAIL,
            action_order=1,
            template_id="tpl-approved",
        ),
        # Budget B1 has no phone: fails with MissingDestination
        Action(
            id="a2",
            trigger_id="trg-x",
            action_type=ActionType.SEND_WHATSAPP,
            action_order=2,
            template_id="tpl-wa",
        ),
    )
    await store.save_trigger(
        Trigger(
            id="trg-x",
            graph_id=budget_workflow.graph.id,
            organization_id=ORG,
            trigger_type=TriggerType.ON_ENTER,
            state_id=budget_workflow.graph.state_by_name("draft").id,
        )
    )

    with pytest.raises(ActionFailures) as exc_info:
        await components.engine.execute_trigger_by_id(ORG, "trg-x", "budget", "B1")

    assert isinstance(exc_info.value.first, MissingDestination)
    assert not exc_info.value.is_retryable()
    assert len(sender.emails) == 1
    tasks = await store.list_tasks(ORG, "budget", "B1")
    assert [t.title for t in tasks] == ["Follow up ORC-2025-001"]

    events = await store.list_events(ORG, "budget", "B1")
    kinds = [(e.event_type, e.action_id) for e in events]
    assert kinds == [
        (EventType.TRIGGER_FIRED, None),
        (EventType.ACTION_EXECUTED, "a1"),
        (EventType.ACTION_FAILED, "a2"),
        (EventType.ACTION_EXECUTED, "a3"),
    ]


@pytest.mark.asyncio
async def test_inactive_actions_are_skipped(components, budget_workflow):
    store = components.store
    await store.save_action(
        Action(
            id="disabled",
            trigger_id=budget_workflow.trigger.id,
            action_type=ActionType.CREATE_TASK,
            action_order=0,
            is_active=False,
        )
    )

    assert await components.engine.execute_trigger_by_id(ORG, "trg-approved", "budget", "B1") == 1
    assert await store.list_tasks(ORG, "budget", "B1") == []


@pytest.mark.asyncio
async def test_channel_failure_is_retryable(components, budget_workflow):
    components.sender.fail_with = ConnectionError("smtp down")

    with pytest.raises(ActionFailures) as exc_info:
        await components.engine.execute_trigger_by_id(ORG, "trg-approved", "budget", "B1")

    assert isinstance(exc_info.value.first, ChannelError)
    assert exc_info.value.is_retryable()


@pytest.mark.asyncio
async def test_trigger_lookup_is_organization_scoped(components, budget_workflow):
    await components.store.save_entity(BudgetContext(entity_id="B1", organization_id=OTHER_ORG))

    with pytest.raises(NotFound):
        await components.engine.execute_trigger_by_id(OTHER_ORG, "trg-approved", "budget", "B1")


@pytest.mark.asyncio
async def test_enqueue_failure_after_persist_is_reported(store, sender, budget_workflow):
    from pystatewise.engine import (
        ActionExecutor,
        EnqueueError,
        TriggerScheduler,
        WorkflowEngine,
    )
    from pystatewise.storage import InMemoryJobQueue, StorageError

    class FailingQueue(InMemoryJobQueue):
        async def enqueue(self, job):
            raise StorageError("queue unavailable")

    client = JobClient(FailingQueue())
    engine = WorkflowEngine(
        store, client, ActionExecutor(store, sender), TriggerScheduler(store, client)
    )

    with pytest.raises(EnqueueError):
        await engine.request_transition(ORG, "budget", "B1", "approved")

    # The state change itself is durable
    assert (await store.get_entity(ORG, "budget", "B1")).current_state == "approved"
