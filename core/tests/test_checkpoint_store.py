"""Tests for checkpoint storage backends and the atomic write helper."""

from datetime import datetime, timedelta

import pytest

from trellis.graph.state import State
from trellis.schemas.checkpoint import Checkpoint, CheckpointIndex
from trellis.storage.checkpoint_store import (
    CheckpointStorage,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)
from trellis.utils.io import atomic_write


def _checkpoint(
    step: int,
    checkpoint_type: str = "step",
    execution_id: str = "exec-1",
    next_node: str | None = "next",
) -> Checkpoint:
    return Checkpoint.create(
        checkpoint_type=checkpoint_type,
        execution_id=execution_id,
        graph_id="graph",
        step=step,
        current_node=f"node{step}",
        next_node=next_node,
        execution_path=[f"node{i}" for i in range(1, step + 1)],
        state=State({"step": step}).snapshot(),
    )


def _blob(checkpoint: Checkpoint) -> bytes:
    return checkpoint.model_dump_json().encode()


class TestCheckpointSchema:
    def test_create_generates_id_and_description(self):
        cp = _checkpoint(3)
        assert cp.checkpoint_id == "cp_000003_step"
        assert cp.description == "Step after node3"
        assert cp.state.data == {"step": 3}

    def test_round_trip_preserves_state_snapshot(self):
        cp = _checkpoint(2)
        restored = Checkpoint.model_validate_json(_blob(cp))
        assert restored.state == cp.state
        assert restored.execution_path == ["node1", "node2"]

    def test_index_replaces_checkpoint_with_same_id(self):
        index = CheckpointIndex(execution_id="exec-1")
        index.add_checkpoint(_checkpoint(1))
        index.add_checkpoint(_checkpoint(2))
        index.add_checkpoint(_checkpoint(1))

        assert index.total_checkpoints == 2
        assert index.latest_checkpoint_id == "cp_000001_step"
        assert [cp.checkpoint_id for cp in index.filter_by_node("node2")] == ["cp_000002_step"]
        assert index.get_checkpoint_summary("cp_000009_step") is None


class TestInMemoryCheckpointStore:
    @pytest.mark.asyncio
    async def test_save_and_load_latest(self):
        store = InMemoryCheckpointStore()
        assert isinstance(store, CheckpointStorage)
        assert await store.load_latest("exec-1") is None

        await store.save("exec-1", _blob(_checkpoint(1)))
        await store.save("exec-1", _blob(_checkpoint(2)))

        latest = Checkpoint.model_validate_json(await store.load_latest("exec-1"))
        assert latest.step == 2
        assert store.count("exec-1") == 2

    @pytest.mark.asyncio
    async def test_executions_are_separate(self):
        store = InMemoryCheckpointStore()
        await store.save("exec-1", _blob(_checkpoint(1)))
        await store.save("exec-2", _blob(_checkpoint(5, execution_id="exec-2")))

        latest = Checkpoint.model_validate_json(await store.load_latest("exec-1"))
        assert latest.step == 1

    @pytest.mark.asyncio
    async def test_truncate_drops_newer_checkpoints(self):
        store = InMemoryCheckpointStore()
        for step in range(1, 5):
            await store.save("exec-1", _blob(_checkpoint(step)))

        await store.truncate("exec-1", keep=2)

        summaries = await store.list_checkpoints("exec-1")
        assert [s.step for s in summaries] == [1, 2]


class TestFileCheckpointStore:
    @pytest.mark.asyncio
    async def test_save_writes_checkpoint_and_index(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        assert isinstance(store, CheckpointStorage)

        await store.save("exec-1", _blob(_checkpoint(1)))

        assert (tmp_path / "exec-1" / "cp_000001_step.json").exists()
        index = await store.load_index("exec-1")
        assert index.latest_checkpoint_id == "cp_000001_step"
        assert index.total_checkpoints == 1

    @pytest.mark.asyncio
    async def test_load_latest_returns_newest(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save("exec-1", _blob(_checkpoint(1)))
        await store.save("exec-1", _blob(_checkpoint(2)))

        latest = Checkpoint.model_validate_json(await store.load_latest("exec-1"))
        assert latest.step == 2
        assert latest.state.data == {"step": 2}

    @pytest.mark.asyncio
    async def test_missing_execution(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        assert await store.load_latest("ghost") is None
        assert await store.load_checkpoint("ghost") is None
        assert await store.list_checkpoints("ghost") == []

    @pytest.mark.asyncio
    async def test_load_checkpoint_by_id(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save_checkpoint(_checkpoint(1))
        await store.save_checkpoint(_checkpoint(2))

        cp = await store.load_checkpoint("exec-1", "cp_000001_step")
        assert cp.step == 1
        assert await store.checkpoint_exists("exec-1", "cp_000002_step")
        assert not await store.checkpoint_exists("exec-1", "cp_000003_step")

    @pytest.mark.asyncio
    async def test_list_checkpoints_filtered_by_type(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save_checkpoint(_checkpoint(1))
        await store.save_checkpoint(_checkpoint(2))
        await store.save_checkpoint(_checkpoint(2, "failure", next_node=None))

        assert len(await store.list_checkpoints("exec-1")) == 3
        failures = await store.list_checkpoints("exec-1", checkpoint_type="failure")
        assert [cp.checkpoint_id for cp in failures] == ["cp_000002_failure"]

    @pytest.mark.asyncio
    async def test_list_executions(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save_checkpoint(_checkpoint(1, execution_id="b"))
        await store.save_checkpoint(_checkpoint(1, execution_id="a"))
        (tmp_path / "stray").mkdir()

        assert await store.list_executions() == ["a", "b"]

    @pytest.mark.asyncio
    async def test_nested_execution_ids_get_flat_directories(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save_checkpoint(_checkpoint(1, execution_id="parent/sub"))

        assert (tmp_path / "parent__sub" / "index.json").exists()
        cp = await store.load_checkpoint("parent/sub")
        assert cp.execution_id == "parent/sub"

    @pytest.mark.asyncio
    async def test_delete_checkpoint_moves_latest_back(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save_checkpoint(_checkpoint(1))
        await store.save_checkpoint(_checkpoint(2))

        assert await store.delete_checkpoint("exec-1", "cp_000002_step")
        assert not await store.delete_checkpoint("exec-1", "cp_000002_step")

        index = await store.load_index("exec-1")
        assert index.latest_checkpoint_id == "cp_000001_step"
        assert index.total_checkpoints == 1

    @pytest.mark.asyncio
    async def test_prune_removes_only_old_checkpoints(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        old = _checkpoint(1).model_copy(
            update={"created_at": (datetime.now() - timedelta(days=30)).isoformat()}
        )
        await store.save_checkpoint(old)
        await store.save_checkpoint(_checkpoint(2))

        deleted = await store.prune_checkpoints("exec-1", max_age_days=7)

        assert deleted == 1
        remaining = await store.list_checkpoints("exec-1")
        assert [cp.checkpoint_id for cp in remaining] == ["cp_000002_step"]

    @pytest.mark.asyncio
    async def test_corrupt_index_is_treated_as_missing(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save_checkpoint(_checkpoint(1))
        (tmp_path / "exec-1" / "index.json").write_text("{not json")

        assert await store.load_index("exec-1") is None
        assert await store.load_latest("exec-1") is None

    @pytest.mark.asyncio
    async def test_save_rejects_non_checkpoint_blob(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        with pytest.raises(ValueError):
            await store.save("exec-1", b'{"hello": "world"}')


class TestAtomicWrite:
    def test_writes_file(self, tmp_path):
        target = tmp_path / "nested" / "out.json"
        with atomic_write(target) as f:
            f.write("content")
        assert target.read_text() == "content"

    def test_error_leaves_target_untouched(self, tmp_path):
        target = tmp_path / "out.json"
        target.write_text("original")

        with pytest.raises(RuntimeError):
            with atomic_write(target) as f:
                f.write("partial")
                raise RuntimeError("crash mid-write")

        assert target.read_text() == "original"
        assert [p.name for p in tmp_path.iterdir()] == ["out.json"]

    def test_binary_mode(self, tmp_path):
        target = tmp_path / "out.bin"
        with atomic_write(target, mode="wb") as f:
            f.write(b"\x00\x01")
        assert target.read_bytes() == b"\x00\x01"
