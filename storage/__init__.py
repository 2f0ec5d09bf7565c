"""
Storage Package.

Durable persistence for canonical transactions and wallet state.

Modules:
- interface: ActivityStore contract used by the engine
- memory: InMemoryActivityStore
- sql: SqlActivityStore (SQLAlchemy)
- engine: engine / session factory / table creation
- models/: ORM models
- repositories/: data access layer
"""

from storage.interface import ActivityStore, InsertOutcome, merge_checkpoint
from storage.memory import InMemoryActivityStore


__all__ = [
    "ActivityStore",
    "InsertOutcome",
    "merge_checkpoint",
    "InMemoryActivityStore",
]
