"""Checkpoint tracking: the list-phase high-water mark in the local store."""

from datetime import datetime
from typing import Protocol

import structlog

log = structlog.stdlib.get_logger()


class CheckpointStore(Protocol):
    def load_checkpoint(self) -> datetime | None: ...

    def save_checkpoint(self, checkpoint: datetime) -> datetime: ...


class TimestampTracker:
    """Loads and advances the sync checkpoint. It never moves backward."""

    def __init__(self, store: CheckpointStore):
        """
        Initialize timestamp tracker.

        Args:
            store: Store exposing ``load_checkpoint`` and ``save_checkpoint``
        """
        self._store = store

    def load_checkpoint(self) -> datetime | None:
        """
        Return the stored checkpoint, or None before the first successful cycle.

        Raises:
            StoreUnavailable: If the store cannot be read
        """
        checkpoint = self._store.load_checkpoint()
        log.info("checkpoint_loaded", checkpoint=checkpoint)
        return checkpoint

    def advance(self, current: datetime | None, candidate: datetime | None) -> datetime | None:
        """
        Move the checkpoint to ``candidate`` if that is later than ``current``.

        Must only be called after the records up to ``candidate`` have been
        written, so the checkpoint never runs ahead of stored data.

        Args:
            current: Checkpoint the cycle started from
            candidate: Proposed new checkpoint

        Returns:
            The new checkpoint, or None when it did not move

        Raises:
            StoreUnavailable: If the store cannot be written
        """
        if candidate is None or (current is not None and candidate <= current):
            log.info("checkpoint_unchanged", checkpoint=current, candidate=candidate)
            return None

        saved = self._store.save_checkpoint(candidate)
        if current is not None and saved <= current:
            return None

        log.info("checkpoint_advanced", previous=current, checkpoint=saved)
        return saved
