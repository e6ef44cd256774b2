"""
Engine module - everything that runs workflows.

This module contains the execution components:
- workflow: WorkflowEngine (transitions, trigger execution)
- evaluator: which triggers fire, and when
- executor: built-in actions (send_whatsapp, send_email, update_field, create_task)
- sweep: time-trigger scan and ledger housekeeping
- client / worker / execution: the job queue's producer and consumer sides
- periodic: cron-driven enqueueing of the scan and cleanup jobs
- handlers: the worker-side entry point per job type
"""

from pystatewise.engine.client import EnqueueError, JobClient
from pystatewise.engine.evaluator import Occurrence, TriggerEvaluator
from pystatewise.engine.executor import DEFAULT_SUBJECT, ActionExecutor
from pystatewise.engine.handlers import JobHandlers
from pystatewise.engine.periodic import PeriodicEntry, PeriodicScheduler
from pystatewise.engine.sweep import TriggerScheduler
from pystatewise.engine.worker import SHUTDOWN_REASON, Registry, Worker, WorkerHandle
from pystatewise.engine.workflow import TransitionResult, WorkflowEngine

__all__ = [
    # Workflow
    "WorkflowEngine",
    "TransitionResult",
    "TriggerEvaluator",
    "Occurrence",
    "ActionExecutor",
    "DEFAULT_SUBJECT",
    # Scheduling
    "TriggerScheduler",
    "PeriodicScheduler",
    "PeriodicEntry",
    # Queue
    "JobClient",
    "EnqueueError",
    "Worker",
    "WorkerHandle",
    "Registry",
    "SHUTDOWN_REASON",
    "JobHandlers",
]
