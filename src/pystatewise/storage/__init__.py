"""Storage backends for workflow data and the job queue.

Provides multiple storage implementations behind common interfaces:
    - WorkflowStore / JobQueue: Abstract interfaces
    - InMemoryWorkflowStore / InMemoryJobQueue: In-memory storage for testing
    - SqliteWorkflowStore / SqliteJobQueue: SQLite-backed storage
    - RedisJobQueue: Redis-backed distributed queue

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to the abstract interfaces.
    Clients depend on abstraction, not concrete implementations,
    enabling easy swapping between storage backends.
"""

from pystatewise.storage.base import (
    JobQueue,
    StorageError,
    WorkflowStore,
    WorkNotificationSource,
)

# Lazy imports: backends pull in their drivers (aiosqlite, redis) only
# when actually used.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryWorkflowStore":
        from pystatewise.storage.memory import InMemoryWorkflowStore

        return InMemoryWorkflowStore
    elif name == "InMemoryJobQueue":
        from pystatewise.storage.memory import InMemoryJobQueue

        return InMemoryJobQueue
    elif name == "SqliteWorkflowStore":
        from pystatewise.storage.sqlite import SqliteWorkflowStore

        return SqliteWorkflowStore
    elif name == "SqliteJobQueue":
        from pystatewise.storage.sqlite import SqliteJobQueue

        return SqliteJobQueue
    elif name == "RedisJobQueue":
        from pystatewise.storage.redis import RedisJobQueue

        return RedisJobQueue
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "JobQueue",
    "WorkflowStore",
    "StorageError",
    "WorkNotificationSource",
    "InMemoryWorkflowStore",
    "InMemoryJobQueue",
    "SqliteWorkflowStore",
    "SqliteJobQueue",
    "RedisJobQueue",
]
