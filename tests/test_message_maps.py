from __future__ import annotations

import json
from pathlib import Path

import pytest

from channel_relay.message_maps import JsonFileBackend, MessageMapEntry, MessageMapStore
from fakes import FakeClock, MemoryBackend


def _store(ttl: float = 100.0) -> tuple[MessageMapStore, MemoryBackend, FakeClock]:
    backend = MemoryBackend()
    clock = FakeClock()
    return MessageMapStore(backend, ttl=ttl, clock=clock), backend, clock


def test_record_then_lookup_returns_identical_mapping() -> None:
    store, _, _ = _store()
    store.record("svc", "-1001_7", {"@c2": 501, "@c3": 502})

    assert store.lookup("svc", "-1001_7") == {"@c2": 501, "@c3": 502}
    assert store.lookup("svc", "-1001_8") is None


def test_entry_at_expiry_boundary_is_expired() -> None:
    store, backend, clock = _store(ttl=100.0)
    store.record("svc", "k", {"@c2": 1})
    store.flush("svc")

    clock.now = 1_099.5
    assert store.lookup("svc", "k") == {"@c2": 1}

    clock.now = 1_100.0
    assert store.lookup("svc", "k") is None
    # The expired entry is purged from durable storage as soon as it is seen.
    assert "k" not in backend.data["svc"]


def test_record_merges_targets_and_refreshes_timestamp() -> None:
    store, backend, clock = _store(ttl=100.0)
    store.record("svc", "k", {"@c2": 1})
    clock.advance(90)
    store.record("svc", "k", {"@c3": 2})
    clock.advance(50)

    assert store.lookup("svc", "k") == {"@c2": 1, "@c3": 2}
    store.flush("svc")
    assert backend.data["svc"]["k"]["timestamp"] == pytest.approx(1_090.0)


def test_record_replaces_expired_entry() -> None:
    store, _, clock = _store(ttl=10.0)
    store.record("svc", "k", {"@c2": 1})
    clock.advance(10)
    store.record("svc", "k", {"@c3": 2})

    assert store.lookup("svc", "k") == {"@c3": 2}


def test_load_drops_expired_entries() -> None:
    store, backend, clock = _store(ttl=100.0)
    backend.data["svc"] = {
        "fresh": {"targets": {"@c2": 1}, "timestamp": clock.now - 10},
        "stale": {"targets": {"@c2": 2}, "timestamp": clock.now - 100},
        "broken": {"targets": "nope"},
    }

    assert store.load("svc") == 1
    store.flush("svc")
    assert set(backend.data["svc"]) == {"fresh"}


def test_flush_only_writes_when_dirty() -> None:
    store, backend, _ = _store()
    store.load("svc")
    store.flush("svc")
    assert backend.saves == 0

    store.record("svc", "k", {"@c2": 1})
    store.flush("svc")
    store.flush("svc")
    assert backend.saves == 1


def test_sweep_purges_and_persists() -> None:
    store, backend, clock = _store(ttl=100.0)
    store.record("svc", "old", {"@c2": 1})
    clock.advance(60)
    store.record("svc", "new", {"@c2": 2})
    clock.advance(50)

    assert store.sweep("svc") == 1
    assert set(backend.data["svc"]) == {"new"}


def test_unload_persists_and_forgets_table() -> None:
    store, backend, _ = _store()
    store.record("svc", "k", {"@c2": 1})
    store.unload("svc")

    assert not store.is_loaded("svc")
    assert backend.data["svc"]["k"]["targets"] == {"@c2": 1}


def test_tables_survive_restart(tmp_path: Path) -> None:
    clock = FakeClock()
    first = MessageMapStore(JsonFileBackend(tmp_path), ttl=100.0, clock=clock)
    first.record("svc-1", "-1001_5", {"@c2": 77})
    first.flush("svc-1")

    second = MessageMapStore(JsonFileBackend(tmp_path), ttl=100.0, clock=clock)
    assert second.lookup("svc-1", "-1001_5") == {"@c2": 77}


def test_json_backend_layout(tmp_path: Path) -> None:
    backend = JsonFileBackend(tmp_path)
    backend.save("svc/1", {"k": MessageMapEntry({"@c2": 3}, 12.5).to_json()})

    path = tmp_path / "service_svc_1.json"
    assert path == backend.path_for("svc/1")
    assert json.loads(path.read_text(encoding="utf-8")) == {
        "k": {"targets": {"@c2": 3}, "timestamp": 12.5}
    }


def test_json_backend_atomic_save(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    backend = JsonFileBackend(tmp_path)
    backend.save("svc", {"k": {"targets": {"@c2": 1}, "timestamp": 1.0}})
    path = backend.path_for("svc")
    original = path.read_text(encoding="utf-8")

    def failing_replace(self: Path, target: Path) -> Path:
        raise OSError("disk full")

    monkeypatch.setattr(Path, "replace", failing_replace)

    with pytest.raises(OSError):
        backend.save("svc", {"k": {"targets": {"@c2": 2}, "timestamp": 2.0}})

    assert path.read_text(encoding="utf-8") == original
    assert not path.with_name(path.name + ".tmp").exists()


def test_json_backend_moves_corrupt_file_aside(tmp_path: Path) -> None:
    backend = JsonFileBackend(tmp_path)
    path = backend.path_for("svc")
    path.write_text("{not json", encoding="utf-8")

    assert backend.load("svc") == {}
    assert not path.exists()
    assert path.with_suffix(".bak").read_text(encoding="utf-8") == "{not json"


def test_delete_removes_memory_and_durable_table(tmp_path: Path) -> None:
    store = MessageMapStore(JsonFileBackend(tmp_path), ttl=100.0, clock=FakeClock())
    store.record("svc", "k", {"@c2": 1})
    store.flush("svc")

    assert store.delete("svc") is True
    assert not (tmp_path / "service_svc.json").exists()
    assert store.lookup("svc", "k") is None
    assert store.delete("svc") is False
