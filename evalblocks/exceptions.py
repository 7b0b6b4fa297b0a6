"""
Error taxonomy shared by the labeler server, the allocator and the client.
"""

from typing import Optional


class LabelerError(Exception):
    """Base class for all labeler errors."""


class TransientStoreError(LabelerError):
    """The backing store failed for a reason that may go away on retry.

    Allocation and ledger reads are pure functions of stored state, so the
    whole operation can be retried.
    """


class ProfileCreationConflict(LabelerError):
    """An annotator profile already exists for this identity."""

    def __init__(self, annotator_id: str):
        super().__init__(f"Annotator profile already exists: {annotator_id}")
        self.annotator_id = annotator_id


class CatalogExhausted(LabelerError):
    """No block is left to assign. Terminal, never retried."""

    def __init__(self, block_number: Optional[int] = None, catalog_size: Optional[int] = None,
                 message: Optional[str] = None):
        super().__init__(message or (
            f"No more work available: block {block_number} starts past the "
            f"end of the task catalog ({catalog_size} tasks)"
        ))
        self.block_number = block_number
        self.catalog_size = catalog_size


class ReservationConflict(LabelerError):
    """A block reservation lost against a concurrent write."""

    def __init__(self, block_number: int, reason: Optional[str] = None):
        super().__init__(reason or f"Reservation of block {block_number} conflicted")
        self.block_number = block_number


class ValidationError(LabelerError):
    """A survey answer or score submission is malformed. Rejected before any write."""


class CatalogFormatError(LabelerError, ValueError):
    """The task catalog resource has an unrecognised shape."""


class ConfigurationError(LabelerError, ValueError):
    """A setting such as the block size or completion rule is invalid."""
