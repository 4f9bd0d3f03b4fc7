"""Tests for the memory and JSON disk cache stores."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from helpers import FakeClock
from pydantic import BaseModel

from k8s_metrics_agent.errors import KeyNotFoundError, StorageDecodeError, StorageError
from k8s_metrics_agent.storage import FILE_EXT, JSONDiskStorage, MemoryStorage


class Endpoint(BaseModel):
    base_url: str
    node_ip: str


@pytest.fixture
def disk_storage(tmp_path: Path, clock: FakeClock) -> JSONDiskStorage:
    return JSONDiskStorage(tmp_path / "cache", clock=clock)


class TestMemoryStorage:
    def test_read_returns_write_timestamp_and_value(self, memory_storage: MemoryStorage, clock: FakeClock) -> None:
        memory_storage.write("ksm", Endpoint(base_url="http://1.2.3.4:8080", node_ip="6.7.8.9"))
        clock.advance(30)

        stored_at, value = memory_storage.read("ksm", Endpoint)

        assert stored_at == int(clock.now - 30)
        assert value == Endpoint(base_url="http://1.2.3.4:8080", node_ip="6.7.8.9")

    def test_overwrite_refreshes_timestamp(self, memory_storage: MemoryStorage, clock: FakeClock) -> None:
        memory_storage.write("key", {"a": 1})
        clock.advance(100)
        memory_storage.write("key", {"a": 2})

        stored_at, value = memory_storage.read("key", dict)

        assert stored_at == int(clock.now)
        assert value == {"a": 2}

    def test_missing_key(self, memory_storage: MemoryStorage) -> None:
        with pytest.raises(KeyNotFoundError, match="missing"):
            memory_storage.read("missing", dict)

    def test_delete_missing_key_is_an_error(self, memory_storage: MemoryStorage) -> None:
        with pytest.raises(KeyNotFoundError):
            memory_storage.delete("missing")

    def test_delete_removes_key(self, memory_storage: MemoryStorage) -> None:
        memory_storage.write("key", [1, 2])
        memory_storage.delete("key")

        with pytest.raises(KeyNotFoundError):
            memory_storage.read("key", list)

    def test_none_is_rejected(self, memory_storage: MemoryStorage) -> None:
        with pytest.raises(StorageError, match="None"):
            memory_storage.write("key", None)

    def test_scalars_are_rejected(self, memory_storage: MemoryStorage) -> None:
        with pytest.raises(StorageError, match="not a model or container"):
            memory_storage.write("key", 42)

    def test_wrong_shape_is_a_decode_error(self, memory_storage: MemoryStorage) -> None:
        memory_storage.write("key", {"unrelated": True})

        with pytest.raises(StorageDecodeError):
            memory_storage.read("key", Endpoint)

    def test_list_of_models(self, memory_storage: MemoryStorage) -> None:
        endpoints = [Endpoint(base_url="http://a:1", node_ip="1.1.1.1"), Endpoint(base_url="http://b:2", node_ip="")]
        memory_storage.write("many", endpoints)

        _, value = memory_storage.read("many", list[Endpoint])

        assert value == endpoints


class TestJSONDiskStorage:
    def test_file_layout(self, disk_storage: JSONDiskStorage, clock: FakeClock) -> None:
        disk_storage.write("kubelet-client", Endpoint(base_url="https://1.2.3.4:10250", node_ip="1.2.3.4"))

        path = disk_storage.path_for("kubelet-client")
        assert path.name == f"kubelet-client{FILE_EXT}"
        entry = json.loads(path.read_text())
        assert entry == {
            "timestamp": int(clock.now),
            "value": {"base_url": "https://1.2.3.4:10250", "node_ip": "1.2.3.4"},
        }

    def test_round_trip_through_disk(self, disk_storage: JSONDiskStorage, clock: FakeClock) -> None:
        disk_storage.write("ksm", Endpoint(base_url="http://ksm:8080", node_ip="6.7.8.9"))

        stored_at, value = disk_storage.read("ksm", Endpoint)

        assert stored_at == int(clock.now)
        assert value.base_url == "http://ksm:8080"

    def test_creates_missing_root(self, tmp_path: Path) -> None:
        root = tmp_path / "a" / "b"
        storage = JSONDiskStorage(root)
        storage.write("k", {"x": 1})

        assert (root / f"k{FILE_EXT}").exists()

    def test_missing_key(self, disk_storage: JSONDiskStorage) -> None:
        with pytest.raises(KeyNotFoundError):
            disk_storage.read("nope", dict)

    def test_delete_missing_key_is_not_an_error(self, disk_storage: JSONDiskStorage) -> None:
        disk_storage.delete("nope")

    def test_delete_removes_file(self, disk_storage: JSONDiskStorage) -> None:
        disk_storage.write("k", {"x": 1})
        disk_storage.delete("k")

        assert not disk_storage.path_for("k").exists()

    def test_corrupt_file(self, disk_storage: JSONDiskStorage) -> None:
        disk_storage.path_for("k").write_text("{not json")

        with pytest.raises(StorageDecodeError, match="corrupt"):
            disk_storage.read("k", dict)

    def test_envelope_without_timestamp(self, disk_storage: JSONDiskStorage) -> None:
        disk_storage.path_for("k").write_text(json.dumps({"value": {}}))

        with pytest.raises(StorageDecodeError):
            disk_storage.read("k", dict)
