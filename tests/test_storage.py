"""Contract tests run against every WorkflowStore and JobQueue adapter.

The in-memory and SQLite adapters must be interchangeable, so each test
here runs once per backend.
"""

import asyncio
import itertools
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from conftest import ORG, OTHER_ORG, budget_graph

from pystatewise.models import (
    Action,
    ActionType,
    BudgetContext,
    Channel,
    EventType,
    ExecutionEvent,
    Job,
    JobStatus,
    MessageTemplate,
    OccurrenceStatus,
    PendingJob,
    Priority,
    SessionContext,
    Task,
    Trigger,
    TriggerType,
)
from pystatewise.storage import StorageError
from pystatewise.storage.base import STALE_REASON


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request):
    return request.getfixturevalue("store" if request.param == "memory" else "sqlite_store")


@pytest.fixture(params=["memory", "sqlite"])
def any_queue(request):
    return request.getfixturevalue("queue" if request.param == "memory" else "sqlite_queue")


def _pending(key: str = "2025-01-15T14:00Z", entity_id: str = "S1", **kwargs) -> PendingJob:
    return PendingJob(
        organization_id=kwargs.pop("organization_id", ORG),
        trigger_id=kwargs.pop("trigger_id", "reminder"),
        entity_type="session",
        entity_id=entity_id,
        occurrence_key=key,
        scheduled_for=datetime(2025, 1, 15, 14, 0, tzinfo=UTC),
        **kwargs,
    )


# Distinct creation times keep FIFO order deterministic at millisecond resolution
_EPOCH = datetime.now(UTC) - timedelta(hours=1)
_tick = itertools.count()


def _job(job_id: str, priority: Priority = Priority.DEFAULT, **kwargs) -> Job:
    kwargs.setdefault("created_at", _EPOCH + timedelta(milliseconds=10 * next(_tick)))
    return Job(job_id=job_id, job_type="ping", payload={"id": job_id}, priority=priority, **kwargs)


# ==============================================================================
# Configuration
# ==============================================================================


@pytest.mark.asyncio
async def test_graph_round_trip_and_org_scoping(any_store):
    graph = budget_graph()
    await any_store.save_graph(graph)

    loaded = await any_store.get_graph(ORG, "budget")
    assert loaded.id == graph.id
    assert [s.name for s in loaded.states] == ["draft", "sent", "approved", "rejected"]
    assert loaded.find_transition("sent", "approved").id == "g-budget-t-approve"

    assert await any_store.get_graph(OTHER_ORG, "budget") is None
    assert await any_store.get_graph_by_id(OTHER_ORG, graph.id) is None
    assert (await any_store.get_graph_by_id(ORG, graph.id)).entity_type == "budget"


@pytest.mark.asyncio
async def test_inactive_graph_is_not_the_active_graph(any_store):
    graph = budget_graph()
    graph.is_active = False
    await any_store.save_graph(graph)

    assert await any_store.get_graph(ORG, "budget") is None
    assert await any_store.get_graph_by_id(ORG, graph.id) is not None


@pytest.mark.asyncio
async def test_triggers_and_actions(any_store):
    await any_store.save_trigger(
        Trigger(
            id="t-enter",
            graph_id="g-budget",
            organization_id=ORG,
            trigger_type=TriggerType.ON_ENTER,
            state_id="g-budget-approved",
        )
    )
    await any_store.save_trigger(
        Trigger(
            id="t-daily",
            graph_id="g-budget",
            organization_id=ORG,
            trigger_type=TriggerType.RECURRING,
            recurring_cron="0 9 * * *",
        )
    )
    await any_store.save_trigger(
        Trigger(
            id="t-off",
            graph_id="g-budget",
            organization_id=ORG,
            trigger_type=TriggerType.TIME_AFTER,
            time_offset_minutes=10,
            is_active=False,
        )
    )
    for order, action_id in [(2, "second"), (1, "first")]:
        await any_store.save_action(
            Action(
                id=action_id,
                trigger_id="t-enter",
                action_type=ActionType.CREATE_TASK,
                action_order=order,
                action_config={"title": action_id},
            )
        )

    assert {t.id for t in await any_store.list_triggers(ORG, "g-budget")} == {"t-enter", "t-daily"}
    assert [t.id for t in await any_store.list_time_triggers()] == ["t-daily"]
    assert await any_store.get_trigger(OTHER_ORG, "t-enter") is None

    actions = await any_store.list_actions("t-enter")
    assert [a.id for a in actions] == ["first", "second"]
    assert actions[0].action_config == {"title": "first"}

    assert (await any_store.get_action(ORG, "first")).action_order == 1
    assert await any_store.get_action(OTHER_ORG, "first") is None


@pytest.mark.asyncio
async def test_template_org_scoping(any_store):
    await any_store.save_template(
        MessageTemplate(id="tpl", organization_id=ORG, channel=Channel.EMAIL, subject="s", body="b")
    )

    template = await any_store.get_template(ORG, "tpl")
    assert template.channel == Channel.EMAIL
    assert template.subject == "s"
    assert await any_store.get_template(OTHER_ORG, "tpl") is None


# ==============================================================================
# Entities
# ==============================================================================


@pytest.mark.asyncio
async def test_entity_round_trip(any_store):
    budget = BudgetContext(
        entity_id="B1",
        organization_id=ORG,
        current_state="sent",
        created_at=datetime(2025, 1, 10, 9, 0, tzinfo=UTC),
        budget_total=Decimal("1234.50"),
        client_email="c@example.com",
    )
    await any_store.save_entity(budget)

    assert await any_store.get_entity(ORG, "budget", "B1") == budget
    assert await any_store.get_entity(OTHER_ORG, "budget", "B1") is None
    assert await any_store.get_entity(ORG, "session", "B1") is None
    assert await any_store.list_entities(ORG, "budget") == [budget]


@pytest.mark.asyncio
async def test_set_entity_state_is_compare_and_set(any_store):
    await any_store.save_entity(BudgetContext(entity_id="B1", organization_id=ORG))

    assert await any_store.set_entity_state(ORG, "budget", "B1", None, "draft")
    assert not await any_store.set_entity_state(ORG, "budget", "B1", None, "sent")
    assert await any_store.set_entity_state(ORG, "budget", "B1", "draft", "sent")
    assert not await any_store.set_entity_state(ORG, "budget", "missing", "draft", "sent")

    assert (await any_store.get_entity(ORG, "budget", "B1")).current_state == "sent"


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_concurrent_compare_and_set_has_one_winner(any_store):
    await any_store.save_entity(BudgetContext(entity_id="B1", organization_id=ORG, current_state="sent"))

    results = await asyncio.gather(
        *(
            any_store.set_entity_state(ORG, "budget", "B1", "sent", target)
            for target in ("approved", "rejected", "draft")
        )
    )
    assert sum(results) == 1


@pytest.mark.asyncio
async def test_update_entity_field(any_store):
    await any_store.save_entity(
        SessionContext(entity_id="S1", organization_id=ORG, current_state="scheduled")
    )

    assert await any_store.update_entity_field(ORG, "session", "S1", "amount", Decimal("75.50"))
    assert await any_store.update_entity_field(ORG, "session", "S1", "notes", "call back")
    assert not await any_store.update_entity_field(ORG, "session", "S9", "notes", "x")

    session = await any_store.get_entity(ORG, "session", "S1")
    assert session.amount == Decimal("75.50")
    assert session.notes == "call back"
    assert session.current_state == "scheduled"


@pytest.mark.asyncio
async def test_tasks(any_store):
    due = datetime(2025, 1, 20, 9, 0, tzinfo=UTC)
    task_id = await any_store.create_task(
        Task(ORG, "budget", "B1", "Follow up", assignee_id="u-1", due_at=due, source_action_id="a")
    )

    tasks = await any_store.list_tasks(ORG, "budget", "B1")
    assert [t.id for t in tasks] == [task_id]
    assert tasks[0].due_at == due
    assert tasks[0].assignee_id == "u-1"
    assert await any_store.list_tasks(OTHER_ORG, "budget", "B1") == []


@pytest.mark.asyncio
async def test_execution_log(any_store):
    await any_store.log_event(
        ExecutionEvent(ORG, "budget", "B1", EventType.STATE_CHANGE, from_state="sent", to_state="approved")
    )
    await any_store.log_event(
        ExecutionEvent(
            ORG, "budget", "B1", EventType.ACTION_FAILED, action_id="a", details={"error": "x"}
        )
    )

    events = await any_store.list_events(ORG, "budget", "B1")
    assert [e.event_type for e in events] == [EventType.STATE_CHANGE, EventType.ACTION_FAILED]
    assert events[1].details == {"error": "x"}
    assert await any_store.list_events(OTHER_ORG, "budget", "B1") == []


# ==============================================================================
# Ledger
# ==============================================================================


@pytest.mark.asyncio
async def test_claim_occurrence_is_unique(any_store):
    assert await any_store.claim_occurrence(_pending())
    assert not await any_store.claim_occurrence(_pending())

    # Same trigger and key for another entity, or another key, is a new claim
    assert await any_store.claim_occurrence(_pending(entity_id="S2"))
    assert await any_store.claim_occurrence(_pending(key="2025-01-15T15:00Z"))

    assert await any_store.count_occurrences() == 3
    assert await any_store.count_occurrences(OccurrenceStatus.CLAIMED) == 3


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_concurrent_claims_have_one_winner(any_store):
    results = await asyncio.gather(*(any_store.claim_occurrence(_pending()) for _ in range(10)))
    assert sum(results) == 1


@pytest.mark.asyncio
async def test_mark_occurrence(any_store):
    await any_store.claim_occurrence(_pending())

    assert await any_store.mark_occurrence(
        "reminder", "S1", "2025-01-15T14:00Z", OccurrenceStatus.FIRED
    )
    row = await any_store.get_occurrence("reminder", "S1", "2025-01-15T14:00Z")
    assert row.status == OccurrenceStatus.FIRED
    assert row.fired_at is not None

    assert not await any_store.mark_occurrence(
        "reminder", "S1", "1999-01-01T00:00Z", OccurrenceStatus.FAILED, "x"
    )
    assert await any_store.get_occurrence("reminder", "S1", "1999-01-01T00:00Z") is None


@pytest.mark.asyncio
async def test_cancel_occurrences_only_touches_claimed_rows(any_store):
    await any_store.claim_occurrence(_pending())
    await any_store.claim_occurrence(_pending(key="2025-01-15T15:00Z"))
    await any_store.claim_occurrence(_pending(entity_id="S2"))
    await any_store.mark_occurrence("reminder", "S1", "2025-01-15T15:00Z", OccurrenceStatus.FIRED)

    assert await any_store.cancel_occurrences(ORG, "session", "S1") == 1

    assert (
        await any_store.get_occurrence("reminder", "S1", "2025-01-15T14:00Z")
    ).status == OccurrenceStatus.CANCELLED
    assert (
        await any_store.get_occurrence("reminder", "S1", "2025-01-15T15:00Z")
    ).status == OccurrenceStatus.FIRED
    assert (
        await any_store.get_occurrence("reminder", "S2", "2025-01-15T14:00Z")
    ).status == OccurrenceStatus.CLAIMED


@pytest.mark.asyncio
async def test_purge_occurrences_keeps_claimed_rows(any_store):
    now = datetime.now(UTC)
    old = now - timedelta(days=40)
    await any_store.claim_occurrence(_pending(created_at=old))
    await any_store.claim_occurrence(_pending(key="2025-01-15T15:00Z", created_at=old))
    await any_store.claim_occurrence(_pending(key="2025-01-15T16:00Z", created_at=now))
    await any_store.mark_occurrence(
        "reminder", "S1", "2025-01-15T15:00Z", OccurrenceStatus.FIRED
    )

    # The old claimed row may still have a job on the queue
    assert await any_store.purge_occurrences(now - timedelta(days=30)) == 1
    assert await any_store.count_occurrences() == 2
    assert await any_store.get_occurrence("reminder", "S1", "2025-01-15T15:00Z") is None
    kept = await any_store.get_occurrence("reminder", "S1", "2025-01-15T14:00Z")
    assert kept.status == OccurrenceStatus.CLAIMED


# ==============================================================================
# Job queue
# ==============================================================================


@pytest.mark.asyncio
async def test_enqueue_and_dequeue(any_queue):
    assert await any_queue.enqueue(_job("j1")) == "j1"

    job = await any_queue.dequeue("w1", [Priority.DEFAULT])
    assert job.job_id == "j1"
    assert job.status == JobStatus.RUNNING
    assert job.locked_by == "w1"
    assert job.attempts == 1
    assert job.payload == {"id": "j1"}

    assert await any_queue.dequeue("w2", [Priority.DEFAULT]) is None


@pytest.mark.asyncio
async def test_unique_key_deduplicates(any_queue):
    assert await any_queue.enqueue(_job("j1", unique_key="scan:10:00")) == "j1"
    assert await any_queue.enqueue(_job("j2", unique_key="scan:10:00")) is None
    assert len(await any_queue.list_jobs()) == 1


@pytest.mark.asyncio
async def test_dequeue_follows_requested_order(any_queue):
    await any_queue.enqueue(_job("low", Priority.LOW))
    await any_queue.enqueue(_job("critical", Priority.CRITICAL))

    assert (await any_queue.dequeue("w", [Priority.LOW, Priority.CRITICAL])).job_id == "low"
    assert (await any_queue.dequeue("w", [Priority.LOW, Priority.CRITICAL])).job_id == "critical"


@pytest.mark.asyncio
async def test_dequeue_skips_priorities_not_requested(any_queue):
    await any_queue.enqueue(_job("low", Priority.LOW))
    assert await any_queue.dequeue("w", [Priority.CRITICAL, Priority.DEFAULT]) is None


@pytest.mark.asyncio
async def test_delayed_job_is_not_ready(any_queue):
    later = datetime.now(UTC) + timedelta(minutes=5)
    await any_queue.enqueue(_job("later", scheduled_for=later))

    assert await any_queue.dequeue("w", [Priority.DEFAULT]) is None
    assert (await any_queue.get_job("later")).status == JobStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_concurrent_dequeue_claims_each_job_once(any_queue):
    for i in range(5):
        await any_queue.enqueue(_job(f"j{i}"))

    claimed = await asyncio.gather(
        *(any_queue.dequeue(f"w{i}", [Priority.DEFAULT]) for i in range(10))
    )
    ids = [j.job_id for j in claimed if j is not None]
    assert sorted(ids) == [f"j{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_complete_retry_dead_letter_release(any_queue):
    for job_id in ("done", "again", "dead", "released"):
        await any_queue.enqueue(_job(job_id))
        await any_queue.dequeue("w", [Priority.DEFAULT])

    await any_queue.complete("done")
    await any_queue.retry("again", "ChannelError: timeout", timedelta(minutes=2))
    await any_queue.dead_letter("dead", "NotFound: trigger not found: t")
    await any_queue.release("released", "shutdown")

    done = await any_queue.get_job("done")
    assert done.status == JobStatus.COMPLETE
    assert done.completed_at is not None

    again = await any_queue.get_job("again")
    assert again.status == JobStatus.PENDING
    assert again.attempts == 1
    assert again.error_message == "ChannelError: timeout"
    assert again.scheduled_for > datetime.now(UTC) + timedelta(minutes=1)

    dead = await any_queue.get_job("dead")
    assert dead.status == JobStatus.FAILED
    assert dead.error_message.startswith("NotFound")

    released = await any_queue.get_job("released")
    assert released.status == JobStatus.PENDING
    assert released.attempts == 0
    assert released.locked_by is None

    counts = await any_queue.counts()
    assert counts[JobStatus.PENDING] == 2
    assert counts[JobStatus.COMPLETE] == 1
    assert counts[JobStatus.FAILED] == 1
    assert counts[JobStatus.RUNNING] == 0


@pytest.mark.asyncio
async def test_state_change_on_missing_job_raises(any_queue):
    with pytest.raises(StorageError):
        await any_queue.complete("nope")


@pytest.mark.asyncio
async def test_purge_terminal_keeps_live_jobs(any_queue):
    for job_id in ("done", "pending"):
        await any_queue.enqueue(_job(job_id))
    await any_queue.dequeue("w", [Priority.DEFAULT])
    await any_queue.complete("done")

    assert await any_queue.purge_terminal(datetime.now(UTC) - timedelta(days=1)) == 0
    assert await any_queue.purge_terminal(datetime.now(UTC) + timedelta(seconds=1)) == 1
    assert [j.job_id for j in await any_queue.list_jobs()] == ["pending"]


@pytest.mark.asyncio
async def test_list_jobs_by_status(any_queue):
    await any_queue.enqueue(_job("a"))
    await any_queue.enqueue(_job("b"))
    await any_queue.dequeue("w", [Priority.DEFAULT])

    assert [j.job_id for j in await any_queue.list_jobs(JobStatus.PENDING)] == ["b"]
    assert [j.job_id for j in await any_queue.list_jobs(JobStatus.RUNNING)] == ["a"]


@pytest.mark.asyncio
async def test_recover_stale_requeues_abandoned_claims(any_queue):
    for job_id in ("abandoned", "finished"):
        await any_queue.enqueue(_job(job_id))
        await any_queue.dequeue("crashed-worker", [Priority.DEFAULT])
    await any_queue.complete("finished")

    # Claims younger than the cutoff are left alone
    assert await any_queue.recover_stale(datetime.now(UTC) - timedelta(minutes=10)) == 0
    assert (await any_queue.get_job("abandoned")).status == JobStatus.RUNNING

    assert await any_queue.recover_stale(datetime.now(UTC) + timedelta(seconds=1)) == 1

    job = await any_queue.get_job("abandoned")
    assert job.status == JobStatus.PENDING
    assert job.locked_by is None
    assert job.attempts == 1
    assert job.error_message.startswith(STALE_REASON)
    assert "crashed-worker" in job.error_message
    assert (await any_queue.get_job("finished")).status == JobStatus.COMPLETE

    again = await any_queue.dequeue("w2", [Priority.DEFAULT])
    assert again.job_id == "abandoned"
    assert again.attempts == 2
    assert again.locked_by == "w2"
