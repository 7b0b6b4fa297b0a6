"""
Block allocator.

Decides which block of the task catalog a requesting annotator should work on.
Blocks left incomplete by earlier annotators are handed out again, lowest
number first, before a new block is opened.

The allocation is split in two phases:

- ``decide()`` reads a snapshot of the directory and the ledger and computes
  the block. It is requester-agnostic and idempotent: unchanged state gives
  the same answer.
- ``reserve()`` writes the block number onto the requester's profile. When
  the decision carries an epoch, the repository must apply the write as a
  single conditional update that fails if any other reservation happened
  since the snapshot was taken.

A reservation without an epoch is the unconditional read-then-write
behaviour: two callers deciding before either writes back both get the same
block.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Protocol

from .exceptions import CatalogExhausted, ConfigurationError, ReservationConflict

logger = logging.getLogger(__name__)

BLOCK_SIZE = 20


@dataclass(frozen=True)
class BlockAssignment:
    """Outcome of an allocation decision."""
    next_block_number: int
    is_reassignment: bool
    total_incomplete_blocks: int
    epoch: Optional[int] = None

    def to_response(self) -> dict:
        return {
            "nextBlockNumber": self.next_block_number,
            "isReassignment": self.is_reassignment,
            "totalIncompleteBlocks": self.total_incomplete_blocks,
            "epoch": self.epoch,
        }


@dataclass(frozen=True)
class AllocationSnapshot:
    """Everything the decision reads from the store.

    Attributes:
        assigned_blocks: distinct block numbers stamped on any profile
        completed_counts: block number -> evaluations attributed to it
        epoch: number of profiles carrying a block number at snapshot time
    """
    assigned_blocks: frozenset
    completed_counts: Mapping[int, int]
    epoch: int


class BlockRepository(Protocol):
    """Storage seen by the allocator."""

    def snapshot(self) -> AllocationSnapshot:
        ...

    def reserve(self, annotator_id: str, block_number: int,
                expected_epoch: Optional[int] = None) -> bool:
        """Stamp block_number on a profile that has none.

        Returns True when the annotator holds block_number afterwards.
        With expected_epoch set, the write happens only if the epoch is
        still the one observed by the decision.
        """
        ...


def block_capacity(block_number: int, catalog_size: int, block_size: int = BLOCK_SIZE) -> int:
    """Number of catalog tasks in a block (short for the final block, 0 past the end)."""
    start = block_number * block_size
    return max(0, min(block_size, catalog_size - start))


def decide_block(
    assigned_blocks: Iterable[int],
    completed_counts: Mapping[int, int],
    catalog_size: int,
    block_size: int = BLOCK_SIZE,
    epoch: Optional[int] = None,
) -> BlockAssignment:
    """
    Pick the next block number.

    1. The lowest-numbered assigned block whose completed count is below its
       capacity, if any (a reassignment).
    2. Otherwise one past the highest block ever assigned, or 0 when none is.

    Raises CatalogExhausted when the chosen block would start at or past the
    end of the catalog.
    """
    if block_size <= 0:
        raise ConfigurationError(f"block_size must be positive, got {block_size}")

    blocks = sorted(set(assigned_blocks))
    incomplete = [
        b for b in blocks
        if completed_counts.get(b, 0) < block_capacity(b, catalog_size, block_size)
    ]
    # Reported count only: blocks with 0 < completed < capacity
    partial = [b for b in incomplete if completed_counts.get(b, 0) > 0]

    if incomplete:
        target = incomplete[0]
        is_reassignment = True
        logger.info(
            "Found incomplete block %d (%d/%d evaluations, %d partially covered in total)",
            target, completed_counts.get(target, 0),
            block_capacity(target, catalog_size, block_size), len(partial),
        )
    else:
        target = max(blocks, default=-1) + 1
        is_reassignment = False
        if blocks:
            logger.info("All %d assigned blocks complete, assigning new block %d", len(blocks), target)
        else:
            logger.info("No blocks assigned yet, starting with block 0")

    if target * block_size >= catalog_size:
        logger.warning("Catalog exhausted: block %d starts past %d tasks", target, catalog_size)
        raise CatalogExhausted(target, catalog_size)

    return BlockAssignment(
        next_block_number=target,
        is_reassignment=is_reassignment,
        total_incomplete_blocks=len(partial),
        epoch=epoch,
    )


class BlockAllocator:
    """
    Allocates catalog blocks to annotators against a BlockRepository.

    Holds no state of its own; every call reads a fresh snapshot.
    """

    def __init__(self, repository: BlockRepository, catalog_size: int, block_size: int = BLOCK_SIZE):
        self.repository = repository
        self.catalog_size = catalog_size
        self.block_size = block_size

    def decide(self) -> BlockAssignment:
        """Compute the next block from the current snapshot. No writes."""
        snapshot = self.repository.snapshot()
        return decide_block(
            snapshot.assigned_blocks,
            snapshot.completed_counts,
            self.catalog_size,
            self.block_size,
            epoch=snapshot.epoch,
        )

    def reserve(self, annotator_id: str, block_number: int, expected_epoch: Optional[int] = None) -> None:
        """Write a decided block onto the annotator's profile.

        Without expected_epoch the write is unconditional apart from the
        profile having no block yet. Raises ReservationConflict if the write
        did not take, CatalogExhausted if the block lies past the catalog.
        """
        if block_number < 0 or block_capacity(block_number, self.catalog_size, self.block_size) == 0:
            raise CatalogExhausted(block_number, self.catalog_size)
        if not self.repository.reserve(annotator_id, block_number, expected_epoch):
            logger.info(
                "Reservation of block %d for %s rejected (epoch %s)",
                block_number, annotator_id, expected_epoch,
            )
            raise ReservationConflict(block_number)
        logger.info("Reserved block %d for %s", block_number, annotator_id)

    def allocate_block(self, annotator_id: str, max_attempts: int = 3) -> BlockAssignment:
        """Decide and reserve, deciding again whenever the reservation loses a race."""
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        last_conflict = None
        for attempt in range(1, max_attempts + 1):
            assignment = self.decide()
            try:
                self.reserve(annotator_id, assignment.next_block_number, assignment.epoch)
                return assignment
            except ReservationConflict as e:
                logger.info("Allocation attempt %d/%d for %s conflicted", attempt, max_attempts, annotator_id)
                last_conflict = e
        raise last_conflict
