"""
Budget Approval Example

A construction budget moves draft -> sent -> approved. Entering
"approved" fires an on_enter trigger whose action emails the client.

## Pattern Shown: Transition, fan-out, worker

- The transition is persisted first, then a CRITICAL trigger job is enqueued
- A worker claims the job and runs the trigger's actions in order
- The execution log records the state change and every action

## Run with:
```bash
PYTHONPATH=src python examples/budget_approval.py
```
"""

import asyncio
from datetime import UTC, datetime
from decimal import Decimal

from pystatewise.config import Settings
from pystatewise.models import (
    Action,
    ActionType,
    BudgetContext,
    Channel,
    MessageTemplate,
    State,
    StateGraph,
    StateType,
    Transition,
    Trigger,
    TriggerType,
)
from pystatewise.runtime import Runtime
from pystatewise.storage.sqlite import SqliteJobQueue, SqliteWorkflowStore

ORG = "org-demo"


class PrintSender:
    """Prints outgoing messages instead of delivering them."""

    async def send_email(self, to: str, subject: str, body: str) -> None:
        print(f"  email to {to}: {subject!r} / {body!r}")

    async def send_message(self, to: str, body: str) -> None:
        print(f"  whatsapp to {to}: {body!r}")


async def seed(store: SqliteWorkflowStore) -> None:
    await store.save_graph(
        StateGraph(
            id="g-budget",
            organization_id=ORG,
            module="construction",
            entity_type="budget",
            name="Budget lifecycle",
            states=[
                State("s-draft", "draft", StateType.INITIAL),
                State("s-sent", "sent", StateType.INTERMEDIATE),
                State("s-approved", "approved", StateType.FINAL),
            ],
            transitions=[
                Transition("t-send", "s-draft", "s-sent", "send"),
                Transition("t-approve", "s-sent", "s-approved", "approve"),
            ],
        )
    )
    await store.save_template(
        MessageTemplate(
            id="tpl-approved",
            organization_id=ORG,
            channel=Channel.EMAIL,
            subject="Orçamento {{budget_number}} aprovado",
            body="Olá {{client_name}}, o orçamento de {{budget_total}} foi aprovado.",
        )
    )
    await store.save_trigger(
        Trigger(
            id="trg-approved",
            graph_id="g-budget",
            organization_id=ORG,
            trigger_type=TriggerType.ON_ENTER,
            state_id="s-approved",
        )
    )
    await store.save_action(
        Action(
            id="act-email",
            trigger_id="trg-approved",
            action_type=ActionType.SEND_EMAIL,
            action_order=1,
            template_id="tpl-approved",
        )
    )
    await store.save_entity(
        BudgetContext(
            entity_id="B1",
            organization_id=ORG,
            created_at=datetime.now(UTC),
            budget_number="ORC-2025-001",
            budget_total=Decimal("1234.50"),
            client_name="Manuel Costa",
            client_email="manuel@example.com",
        )
    )


async def main():
    """Run the budget approval example on in-memory SQLite."""
    store = await SqliteWorkflowStore.in_memory()
    queue = await SqliteJobQueue.in_memory()
    await seed(store)

    runtime = Runtime(store, queue, Settings(worker_id="demo-worker"), PrintSender())
    await runtime.start()

    await runtime.engine.initialize_entity(ORG, "budget", "B1")
    await runtime.engine.request_transition(ORG, "budget", "B1", "sent")
    result = await runtime.engine.request_transition(ORG, "budget", "B1", "approved")
    print(f"Transition {result.from_state} -> {result.to_state}, jobs: {result.job_ids}")

    # Wait for the worker to finish the trigger job
    for _ in range(100):
        job = await queue.get_job(result.job_ids[0])
        if job and job.status.is_terminal:
            print(f"Job {job.job_id} finished: {job.status}")
            break
        await asyncio.sleep(0.1)

    for event in await store.list_events(ORG, "budget", "B1"):
        print(f"  {event.event_type}: {event.from_state or ''} {event.to_state or ''}")

    await runtime.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
