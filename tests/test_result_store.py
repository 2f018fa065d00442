"""Tests for result persistence."""

import pytest

from workflow_engine.exceptions import StorageError
from workflow_engine.services.result_store import LocalResultBackend, ResultStore, build_storage_path


class TestResultStore:
    """Test suite for ResultStore."""

    def test_storage_path(self):
        """Test the path layout of stored results."""
        assert build_storage_path("b1", 3, "i1", "image/png") == "b1/3_i1.png"
        assert build_storage_path("b1", 0, "i2", "image/jpeg") == "b1/0_i2.jpg"

    def test_save_is_idempotent(self, coordinator, sealed_key, result_store, result_backend):
        """Test that saving twice for one item keeps the first asset."""
        batch_id = coordinator.submit_batch("owner-1", sealed_key, ["a prompt to store"])
        item_id = coordinator.get_batch_items(batch_id)[0].id

        first = result_store.save(batch_id, item_id, 0, b"png-bytes", "image/png")
        second = result_store.save(batch_id, item_id, 0, b"other-bytes", "image/png")

        assert first == second
        assert result_backend.write_attempts == 1

        asset = result_store.get_for_item(item_id)
        assert asset.size == len(b"png-bytes")
        assert result_store.read(asset) == b"png-bytes"
        assert [a.id for a in result_store.list_for_batch(batch_id)] == [first]

    def test_write_failure_raises_storage_error(self, coordinator, sealed_key, result_store, result_backend):
        """Test that backend failures surface as StorageError and leave no row."""
        result_backend.fail_writes = 1
        batch_id = coordinator.submit_batch("owner-1", sealed_key, ["a prompt to store"])
        item_id = coordinator.get_batch_items(batch_id)[0].id

        with pytest.raises(StorageError):
            result_store.save(batch_id, item_id, 0, b"png-bytes")
        assert result_store.get_for_item(item_id) is None


class TestLocalResultBackend:
    """Test suite for the filesystem backend."""

    def test_write_read_delete(self, tmp_path):
        """Test the local file lifecycle."""
        backend = LocalResultBackend(str(tmp_path))
        backend.write("batch-1/0_item.png", b"data", "image/png")

        assert (tmp_path / "batch-1" / "0_item.png").read_bytes() == b"data"
        assert backend.read("batch-1/0_item.png") == b"data"

        backend.delete("batch-1/0_item.png")
        assert not (tmp_path / "batch-1" / "0_item.png").exists()
