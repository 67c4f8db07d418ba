"""
Checkpoint Store - Persists serialized checkpoints per execution.

The executor only depends on the narrow CheckpointStorage protocol
(save a blob, load the latest blob). Two implementations ship:

- InMemoryCheckpointStore: for tests and short-lived processes
- FileCheckpointStore: one directory per execution with atomic writes
  and an index manifest for fast listing
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol, runtime_checkable

from trellis.schemas.checkpoint import Checkpoint, CheckpointIndex, CheckpointSummary
from trellis.utils.io import atomic_write

logger = logging.getLogger(__name__)


@runtime_checkable
class CheckpointStorage(Protocol):
    """Minimal storage contract used by CheckpointManager."""

    async def save(self, execution_id: str, blob: bytes) -> None: ...

    async def load_latest(self, execution_id: str) -> bytes | None: ...


class InMemoryCheckpointStore:
    """Keeps every checkpoint blob in process memory, newest last."""

    def __init__(self):
        self._blobs: dict[str, list[bytes]] = {}
        self._lock = asyncio.Lock()

    async def save(self, execution_id: str, blob: bytes) -> None:
        async with self._lock:
            self._blobs.setdefault(execution_id, []).append(blob)

    async def load_latest(self, execution_id: str) -> bytes | None:
        async with self._lock:
            blobs = self._blobs.get(execution_id)
            return blobs[-1] if blobs else None

    async def list_checkpoints(self, execution_id: str) -> list[CheckpointSummary]:
        async with self._lock:
            blobs = list(self._blobs.get(execution_id, []))
        return [
            CheckpointSummary.from_checkpoint(Checkpoint.model_validate_json(blob))
            for blob in blobs
        ]

    async def truncate(self, execution_id: str, keep: int) -> None:
        """Drop all but the first ``keep`` checkpoints (simulates a crash)."""
        async with self._lock:
            if execution_id in self._blobs:
                del self._blobs[execution_id][keep:]

    def count(self, execution_id: str) -> int:
        return len(self._blobs.get(execution_id, []))


class FileCheckpointStore:
    """
    Stores checkpoints on disk with atomic writes.

    Directory structure:
        {base_path}/
            {execution_id}/
                index.json            # Checkpoint manifest
                cp_{step}_{type}.json # Individual checkpoints
    """

    def __init__(self, base_path: Path | str):
        """
        Initialize checkpoint store.

        Args:
            base_path: Root directory holding one sub-directory per execution
        """
        self.base_path = Path(base_path)
        self._index_lock = asyncio.Lock()

    def _execution_dir(self, execution_id: str) -> Path:
        # Nested subgraph executions use "parent/node" ids
        return self.base_path / execution_id.replace("/", "__")

    def _index_path(self, execution_id: str) -> Path:
        return self._execution_dir(execution_id) / "index.json"

    async def save(self, execution_id: str, blob: bytes) -> None:
        """
        Atomically save a checkpoint blob and update the index.

        Raises:
            OSError: If the file write fails
            pydantic.ValidationError: If the blob is not a checkpoint
        """
        checkpoint = Checkpoint.model_validate_json(blob)
        await self.save_checkpoint(checkpoint, blob)

    async def save_checkpoint(self, checkpoint: Checkpoint, blob: bytes | None = None) -> None:
        """Save a Checkpoint model (serializing it when no blob is given)."""
        execution_dir = self._execution_dir(checkpoint.execution_id)
        payload = blob if blob is not None else checkpoint.model_dump_json(indent=2).encode()

        def _write():
            checkpoint_path = execution_dir / f"{checkpoint.checkpoint_id}.json"
            with atomic_write(checkpoint_path, mode="wb") as f:
                f.write(payload)
            logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id}")

        # Blocking I/O in thread
        await asyncio.to_thread(_write)

        async with self._index_lock:
            await self._update_index_add(checkpoint)

    async def load_latest(self, execution_id: str) -> bytes | None:
        index = await self.load_index(execution_id)
        if not index or not index.latest_checkpoint_id:
            return None
        return await self._read_blob(execution_id, index.latest_checkpoint_id)

    async def load_checkpoint(
        self,
        execution_id: str,
        checkpoint_id: str | None = None,
    ) -> Checkpoint | None:
        """
        Load checkpoint by ID or latest.

        Returns:
            Checkpoint object, or None if not found or unreadable
        """
        if checkpoint_id is None:
            blob = await self.load_latest(execution_id)
        else:
            blob = await self._read_blob(execution_id, checkpoint_id)
        if blob is None:
            return None
        try:
            return Checkpoint.model_validate_json(blob)
        except ValueError as e:
            logger.error(f"Failed to parse checkpoint for {execution_id}: {e}")
            return None

    async def _read_blob(self, execution_id: str, checkpoint_id: str) -> bytes | None:
        checkpoint_path = self._execution_dir(execution_id) / f"{checkpoint_id}.json"

        def _read() -> bytes | None:
            if not checkpoint_path.exists():
                logger.warning(f"Checkpoint file not found: {checkpoint_path}")
                return None
            return checkpoint_path.read_bytes()

        return await asyncio.to_thread(_read)

    async def load_index(self, execution_id: str) -> CheckpointIndex | None:
        """Load the checkpoint index for an execution (None if absent or corrupt)."""
        index_path = self._index_path(execution_id)

        def _read() -> CheckpointIndex | None:
            if not index_path.exists():
                return None
            try:
                return CheckpointIndex.model_validate_json(index_path.read_text())
            except ValueError as e:
                logger.error(f"Failed to load checkpoint index: {e}")
                return None

        return await asyncio.to_thread(_read)

    async def list_checkpoints(
        self,
        execution_id: str,
        checkpoint_type: str | None = None,
    ) -> list[CheckpointSummary]:
        """List checkpoints of an execution, optionally filtered by type."""
        index = await self.load_index(execution_id)
        if not index:
            return []
        if checkpoint_type:
            return index.filter_by_type(checkpoint_type)
        return list(index.checkpoints)

    async def list_executions(self) -> list[str]:
        """Execution directories that hold an index."""

        def _scan() -> list[str]:
            if not self.base_path.exists():
                return []
            return sorted(
                p.name for p in self.base_path.iterdir() if (p / "index.json").exists()
            )

        return await asyncio.to_thread(_scan)

    async def delete_checkpoint(self, execution_id: str, checkpoint_id: str) -> bool:
        """
        Delete a specific checkpoint.

        Returns:
            True if deleted, False if not found
        """
        checkpoint_path = self._execution_dir(execution_id) / f"{checkpoint_id}.json"

        def _delete() -> bool:
            if not checkpoint_path.exists():
                logger.warning(f"Checkpoint file not found: {checkpoint_path}")
                return False
            checkpoint_path.unlink()
            logger.info(f"Deleted checkpoint {checkpoint_id}")
            return True

        deleted = await asyncio.to_thread(_delete)

        if deleted:
            async with self._index_lock:
                await self._update_index_remove(execution_id, checkpoint_id)

        return deleted

    async def prune_checkpoints(self, execution_id: str, max_age_days: int = 7) -> int:
        """
        Prune checkpoints older than max_age_days.

        Returns:
            Number of checkpoints deleted
        """
        index = await self.load_index(execution_id)
        if not index or not index.checkpoints:
            return 0

        cutoff = datetime.now() - timedelta(days=max_age_days)

        old_checkpoints = []
        for cp in index.checkpoints:
            try:
                created = datetime.fromisoformat(cp.created_at)
            except ValueError as e:
                logger.warning(f"Failed to parse timestamp for {cp.checkpoint_id}: {e}")
                continue
            if created < cutoff:
                old_checkpoints.append(cp.checkpoint_id)

        deleted_count = 0
        for checkpoint_id in old_checkpoints:
            if await self.delete_checkpoint(execution_id, checkpoint_id):
                deleted_count += 1

        if deleted_count > 0:
            logger.info(f"Pruned {deleted_count} checkpoints older than {max_age_days} days")

        return deleted_count

    async def checkpoint_exists(self, execution_id: str, checkpoint_id: str) -> bool:
        checkpoint_path = self._execution_dir(execution_id) / f"{checkpoint_id}.json"
        return await asyncio.to_thread(checkpoint_path.exists)

    async def _write_index(self, execution_id: str, index: CheckpointIndex) -> None:
        index_path = self._index_path(execution_id)

        def _write():
            with atomic_write(index_path) as f:
                f.write(index.model_dump_json(indent=2))

        await asyncio.to_thread(_write)

    async def _update_index_add(self, checkpoint: Checkpoint) -> None:
        """Should be called with _index_lock held."""
        index = await self.load_index(checkpoint.execution_id)
        if not index:
            index = CheckpointIndex(execution_id=checkpoint.execution_id)

        index.add_checkpoint(checkpoint)
        await self._write_index(checkpoint.execution_id, index)

        logger.debug(f"Updated index with checkpoint {checkpoint.checkpoint_id}")

    async def _update_index_remove(self, execution_id: str, checkpoint_id: str) -> None:
        """Should be called with _index_lock held."""
        index = await self.load_index(execution_id)
        if not index:
            return

        index.checkpoints = [cp for cp in index.checkpoints if cp.checkpoint_id != checkpoint_id]
        index.total_checkpoints = len(index.checkpoints)

        if index.latest_checkpoint_id == checkpoint_id:
            index.latest_checkpoint_id = (
                index.checkpoints[-1].checkpoint_id if index.checkpoints else None
            )

        await self._write_index(execution_id, index)

        logger.debug(f"Removed checkpoint {checkpoint_id} from index")
