"""
Pytest configuration and fixtures for statewise tests.

Provides reusable fixtures for storage backends, a recording channel
sender, fully wired engine components and a seeded budget workflow.
"""

import os
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from hypothesis import strategies as st

from pystatewise.engine import (
    ActionExecutor,
    JobClient,
    JobHandlers,
    TriggerEvaluator,
    TriggerScheduler,
    Worker,
    WorkflowEngine,
)
from pystatewise.models import (
    Action,
    ActionType,
    BudgetContext,
    Channel,
    MessageTemplate,
    Priority,
    RetryPolicy,
    State,
    StateGraph,
    StateType,
    Transition,
    Trigger,
    TriggerType,
)
from pystatewise.storage import InMemoryJobQueue, InMemoryWorkflowStore
from pystatewise.storage.sqlite import SqliteJobQueue, SqliteWorkflowStore

ORG = "org-1"
OTHER_ORG = "org-2"


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


# ==============================================================================
# Channel sender
# ==============================================================================


@dataclass
class RecordingSender:
    """NotificationSender that records every send (and can be told to fail)."""

    emails: list[tuple[str, str, str]] = field(default_factory=list)
    messages: list[tuple[str, str]] = field(default_factory=list)
    fail_with: Exception | None = None

    async def send_email(self, to: str, subject: str, body: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.emails.append((to, subject, body))

    async def send_message(self, to: str, body: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.messages.append((to, body))


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


# ==============================================================================
# Storage
# ==============================================================================


@pytest.fixture
async def store() -> AsyncGenerator[InMemoryWorkflowStore, None]:
    store = InMemoryWorkflowStore()
    yield store
    await store.close()


@pytest.fixture
async def queue() -> AsyncGenerator[InMemoryJobQueue, None]:
    queue = InMemoryJobQueue()
    yield queue
    await queue.close()


@pytest.fixture
async def sqlite_store() -> AsyncGenerator[SqliteWorkflowStore, None]:
    """SQLite in-memory workflow store with automatic cleanup."""
    store = await SqliteWorkflowStore.in_memory()
    yield store
    await store.close()


@pytest.fixture
async def sqlite_queue() -> AsyncGenerator[SqliteJobQueue, None]:
    """SQLite in-memory job queue with automatic cleanup."""
    queue = await SqliteJobQueue.in_memory()
    yield queue
    await queue.close()


# ==============================================================================
# Engine components
# ==============================================================================


@dataclass
class Components:
    store: InMemoryWorkflowStore
    queue: InMemoryJobQueue
    sender: RecordingSender
    client: JobClient
    executor: ActionExecutor
    scheduler: TriggerScheduler
    engine: WorkflowEngine
    handlers: JobHandlers
    worker: Worker


@pytest.fixture
def components(store, queue, sender) -> Components:
    """Everything wired on in-memory adapters; the worker retries immediately."""
    client = JobClient(queue)
    executor = ActionExecutor(store, sender)
    scheduler = TriggerScheduler(store, client, TriggerEvaluator())
    engine = WorkflowEngine(store, client, executor, scheduler)
    handlers = JobHandlers(engine, scheduler, executor, store)
    worker = Worker(queue, "test-worker").with_retry_policy(
        RetryPolicy(max_attempts=3, step=timedelta(0))
    )
    handlers.register(worker)
    return Components(
        store, queue, sender, client, executor, scheduler, engine, handlers, worker
    )


# ==============================================================================
# Session graph with a reminder one hour before the appointment
# ==============================================================================


def session_graph(org: str = ORG) -> StateGraph:
    return StateGraph(
        id=f"g-session-{org}",
        organization_id=org,
        module="clinic",
        entity_type="session",
        states=[
            State(f"{org}-scheduled", "scheduled", StateType.INITIAL),
            State(f"{org}-done", "done", StateType.FINAL),
        ],
    )


def reminder(org: str = ORG, minutes: int = 60) -> Trigger:
    return Trigger(
        id=f"reminder-{org}",
        graph_id=f"g-session-{org}",
        organization_id=org,
        trigger_type=TriggerType.TIME_BEFORE,
        time_offset_minutes=minutes,
        time_field="scheduled_at",
    )


# ==============================================================================
# Seeded budget workflow: draft -> sent -> approved (and sent -> draft)
# ==============================================================================


def budget_graph(org: str = ORG, graph_id: str = "g-budget") -> StateGraph:
    return StateGraph(
        id=graph_id,
        organization_id=org,
        module="construction",
        entity_type="budget",
        name="Budget lifecycle",
        states=[
            State(f"{graph_id}-draft", "draft", StateType.INITIAL),
            State(f"{graph_id}-sent", "sent", StateType.INTERMEDIATE),
            State(f"{graph_id}-approved", "approved", StateType.FINAL),
            State(f"{graph_id}-rejected", "rejected", StateType.FINAL),
        ],
        transitions=[
            Transition(f"{graph_id}-t-send", f"{graph_id}-draft", f"{graph_id}-sent", "send"),
            Transition(
                f"{graph_id}-t-approve", f"{graph_id}-sent", f"{graph_id}-approved", "approve"
            ),
            Transition(f"{graph_id}-t-reject", f"{graph_id}-sent", f"{graph_id}-rejected", "reject"),
            Transition(f"{graph_id}-t-revise", f"{graph_id}-sent", f"{graph_id}-draft", "revise"),
        ],
    )


@dataclass
class BudgetWorkflow:
    graph: StateGraph
    trigger: Trigger
    action: Action
    template: MessageTemplate
    budget: BudgetContext


@pytest.fixture
async def budget_workflow(store) -> BudgetWorkflow:
    """Budget B1 in state 'sent'; on_enter(approved) sends one email."""
    graph = budget_graph()
    await store.save_graph(graph)

    template = MessageTemplate(
        id="tpl-approved",
        organization_id=ORG,
        channel=Channel.EMAIL,
        name="Budget approved",
        subject="Orçamento {{budget_number}}",
        body="Orçamento aprovado: {{budget_total}}",
    )
    await store.save_template(template)

    trigger = Trigger(
        id="trg-approved",
        graph_id=graph.id,
        organization_id=ORG,
        trigger_type=TriggerType.ON_ENTER,
        state_id=graph.state_by_name("approved").id,
    )
    await store.save_trigger(trigger)

    action = Action(
        id="act-approved-email",
        trigger_id=trigger.id,
        action_type=ActionType.SEND_EMAIL,
        action_order=1,
        template_id=template.id,
    )
    await store.save_action(action)

    budget = BudgetContext(
        entity_id="B1",
        organization_id=ORG,
        current_state="sent",
        created_at=datetime(2025, 1, 10, 9, 0, tzinfo=UTC),
        budget_number="ORC-2025-001",
        budget_total=Decimal("1234.50"),
        project_name="Remodelação Cozinha",
        client_name="Manuel Costa",
        client_email="manuel@example.com",
    )
    await store.save_entity(budget)

    return BudgetWorkflow(graph, trigger, action, template, budget)


# ==============================================================================
# Hypothesis strategies
# ==============================================================================

variable_names = st.from_regex(r"[a-z][a-z_]{0,15}", fullmatch=True)

priorities = st.sampled_from(list(Priority))
