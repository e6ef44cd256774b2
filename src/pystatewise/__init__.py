"""
Statewise: Workflow Automation Engine for Python

Organizations define lifecycles (state graphs) for their entities, attach
triggers to lifecycle events or elapsed time, and triggers run built-in
actions (WhatsApp and email notifications, field updates, follow-up tasks)
through a durable, retrying, multi-priority job queue.

Design Pattern: Façade Pattern
This module re-exports the pieces most programs need, hiding the layout
of models, storage and engine subpackages.

Example:
    ```python
    import asyncio
    from pystatewise import (
        ActionExecutor, JobClient, JobHandlers, LoggingSender, TriggerScheduler,
        Worker, WorkflowEngine,
    )
    from pystatewise.storage import SqliteJobQueue, SqliteWorkflowStore

    async def main():
        store = SqliteWorkflowStore("workflow.db")
        await store.connect()
        queue = SqliteJobQueue("workflow.db")
        await queue.connect()

        client = JobClient(queue)
        executor = ActionExecutor(store, LoggingSender())
        scheduler = TriggerScheduler(store, client)
        engine = WorkflowEngine(store, client, executor, scheduler)

        await engine.request_transition("org-1", "budget", "B1", "approved")

        worker = Worker(queue, "worker-1")
        JobHandlers(engine, scheduler, executor, store).register(worker)
        await worker.drain()

    asyncio.run(main())
    ```
"""

# Models first: the error taxonomy and the models import each other
from pystatewise.models import (
    Action,
    ActionType,
    BudgetContext,
    Channel,
    EntityContext,
    Job,
    JobStatus,
    MessageTemplate,
    Priority,
    ProjectContext,
    RetryPolicy,
    RetryableError,
    SessionContext,
    State,
    StateGraph,
    StateType,
    Transition,
    Trigger,
    TriggerType,
)
from pystatewise.errors import (
    ActionFailures,
    ChannelError,
    ForbiddenFieldUpdate,
    InvalidConfiguration,
    InvalidTransition,
    MissingDestination,
    MissingTemplate,
    NotFound,
    TransientError,
    UnknownJobType,
    ValidationError,
    WorkflowError,
)
from pystatewise.channels import LoggingSender, NotificationSender
from pystatewise.render import preview_template, render, validate_template
from pystatewise.storage import JobQueue, StorageError, WorkflowStore
from pystatewise.engine import (
    ActionExecutor,
    EnqueueError,
    JobClient,
    JobHandlers,
    PeriodicScheduler,
    TransitionResult,
    TriggerEvaluator,
    TriggerScheduler,
    Worker,
    WorkerHandle,
    WorkflowEngine,
)
from pystatewise.config import Settings

__version__ = "0.1.0"

__all__ = [
    # Models
    "Action",
    "ActionType",
    "Channel",
    "MessageTemplate",
    "State",
    "StateGraph",
    "StateType",
    "Transition",
    "Trigger",
    "TriggerType",
    "EntityContext",
    "SessionContext",
    "BudgetContext",
    "ProjectContext",
    "Job",
    "JobStatus",
    "Priority",
    "RetryPolicy",
    "RetryableError",
    # Errors
    "WorkflowError",
    "ValidationError",
    "InvalidTransition",
    "MissingTemplate",
    "MissingDestination",
    "ForbiddenFieldUpdate",
    "InvalidConfiguration",
    "NotFound",
    "UnknownJobType",
    "TransientError",
    "ChannelError",
    "ActionFailures",
    "StorageError",
    "EnqueueError",
    # Templates and channels
    "render",
    "validate_template",
    "preview_template",
    "NotificationSender",
    "LoggingSender",
    # Storage interfaces
    "WorkflowStore",
    "JobQueue",
    # Engine
    "WorkflowEngine",
    "TransitionResult",
    "TriggerEvaluator",
    "ActionExecutor",
    "TriggerScheduler",
    "PeriodicScheduler",
    "JobClient",
    "Worker",
    "WorkerHandle",
    "JobHandlers",
    "Settings",
]
