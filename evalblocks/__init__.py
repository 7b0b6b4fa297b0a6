"""
Core of the conclusion evaluation labeler: task catalog, block allocator and
the shared error taxonomy.
"""

from .allocator import (
    BLOCK_SIZE,
    AllocationSnapshot,
    BlockAllocator,
    BlockAssignment,
    BlockRepository,
    block_capacity,
    decide_block,
)
from .catalog import Task, TaskCatalog, catalog_to_dict, load_catalog, parse_catalog
from .exceptions import (
    CatalogExhausted,
    CatalogFormatError,
    ConfigurationError,
    LabelerError,
    ProfileCreationConflict,
    ReservationConflict,
    TransientStoreError,
    ValidationError,
)

__all__ = [
    "BLOCK_SIZE",
    "AllocationSnapshot",
    "BlockAllocator",
    "BlockAssignment",
    "BlockRepository",
    "block_capacity",
    "decide_block",
    "Task",
    "TaskCatalog",
    "catalog_to_dict",
    "load_catalog",
    "parse_catalog",
    "CatalogExhausted",
    "CatalogFormatError",
    "ConfigurationError",
    "LabelerError",
    "ProfileCreationConflict",
    "ReservationConflict",
    "TransientStoreError",
    "ValidationError",
]
