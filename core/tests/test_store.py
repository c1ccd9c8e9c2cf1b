"""Tests for the graph stores.

FileGraphStore tests use pytest's ``tmp_path`` fixture.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from agenttrace.errors import PersistenceError
from agenttrace.graph.schemas import (
    Edge,
    Trace,
    TraceFilter,
    TraceStatus,
    edge_id_for,
)
from agenttrace.graph.store import FileGraphStore, GraphStore, InMemoryGraphStore


def _trace(trace_id: str, start: float, project: str = "default", status=TraceStatus.RUNNING) -> Trace:
    return Trace(id=trace_id, project_name=project, start_time=start, status=status)


class TestInMemoryGraphStore:
    def test_satisfies_protocol(self, store):
        assert isinstance(store, GraphStore)

    def test_create_trace_once(self, store):
        assert store.create_trace(_trace("t", 1.0)) is True
        assert store.create_trace(_trace("t", 2.0)) is False
        assert store.get_trace("t").start_time == 1.0

    def test_returns_copies(self, store, make_node):
        store.create_trace(_trace("trace-1", 1.0))
        store.add_node(make_node("r", response="original"))

        node = store.get_nodes("trace-1")[0]
        node.data.response = "mutated"
        assert store.get_nodes("trace-1")[0].data.response == "original"

    def test_add_node_requires_trace(self, store, make_node):
        with pytest.raises(KeyError):
            store.add_node(make_node("r"))

    def test_update_unknown_node_raises(self, store, make_node):
        store.create_trace(_trace("trace-1", 1.0))
        with pytest.raises(KeyError):
            store.update_node(make_node("r"))

    def test_nodes_sorted_by_sequence(self, store, make_node):
        store.create_trace(_trace("trace-1", 1.0))
        store.add_node(make_node("b", sequence=1))
        store.add_node(make_node("a", sequence=0))
        assert [n.run_id for n in store.get_nodes("trace-1")] == ["a", "b"]

    def test_duplicate_edge_rejected(self, store):
        store.create_trace(_trace("t", 1.0))
        edge = Edge(id=edge_id_for("t", "a", "b"), trace_id="t", from_node="a", to_node="b")
        assert store.add_edge(edge) is True
        assert store.add_edge(edge) is False
        assert len(store.get_edges("t")) == 1

    def test_list_traces_newest_first_with_filters(self, store):
        store.create_trace(_trace("old", 1.0, project="a"))
        store.create_trace(_trace("new", 3.0, project="a", status=TraceStatus.ERROR))
        store.create_trace(_trace("other", 2.0, project="b"))

        assert [t.id for t in store.list_traces()] == ["new", "other", "old"]
        assert [t.id for t in store.list_traces(TraceFilter(project_name="a"))] == ["new", "old"]
        assert [t.id for t in store.list_traces(TraceFilter(status=TraceStatus.ERROR))] == ["new"]
        assert [t.id for t in store.list_traces(TraceFilter(limit=1, offset=1))] == ["other"]

    def test_anomalies_upserted_by_id(self, store):
        store.create_trace(_trace("t", 1.0))
        store.upsert_anomalies("t", [{"id": "a1", "title": "first"}])
        store.upsert_anomalies("t", [{"id": "a1", "title": "second"}, {"id": "a2", "title": "x"}])

        anomalies = {a["id"]: a for a in store.get_anomalies("t")}
        assert anomalies["a1"]["title"] == "second"
        assert len(anomalies) == 2

    def test_snapshot_unknown_trace(self, store):
        assert store.snapshot("missing") is None

    def test_snapshot_is_isolated_from_later_writes(self, store, make_node):
        store.create_trace(_trace("trace-1", 1.0))
        store.add_node(make_node("a"))
        snapshot = store.snapshot("trace-1")

        store.add_node(make_node("b", sequence=1))
        assert len(snapshot.nodes) == 1
        assert snapshot.resolve("a") is not None
        assert snapshot.resolve(snapshot.nodes[0].id).run_id == "a"

    @pytest.mark.asyncio
    async def test_snapshot_async(self, store):
        store.create_trace(_trace("t", 1.0))
        snapshot = await store.snapshot_async("t")
        assert snapshot.trace_id == "t"


class TestFileGraphStore:
    def test_mutations_written_to_disk(self, tmp_path: Path, make_node):
        store = FileGraphStore(tmp_path)
        store.create_trace(_trace("trace-1", 1.0))
        store.add_node(make_node("a"))

        data = json.loads(store.get_trace_path("trace-1").read_text())
        assert data["trace"]["id"] == "trace-1"
        assert len(data["nodes"]) == 1
        assert not list((tmp_path / "traces").glob("*.tmp"))

    def test_reload_after_restart(self, tmp_path: Path, make_node):
        store = FileGraphStore(tmp_path)
        store.create_trace(_trace("trace-1", 1.0))
        node = make_node("a")
        store.add_node(node)
        store.upsert_anomalies("trace-1", [{"id": "x", "title": "t"}])

        reloaded = FileGraphStore(tmp_path)
        assert reloaded.get_trace("trace-1") is not None
        assert reloaded.get_node(node.id).run_id == "a"
        assert reloaded.get_anomalies("trace-1") == [{"id": "x", "title": "t"}]

    def test_corrupt_file_is_skipped(self, tmp_path: Path):
        (tmp_path / "traces").mkdir()
        (tmp_path / "traces" / "bad.json").write_text("{not json")

        store = FileGraphStore(tmp_path)
        assert store.list_traces() == []

    def test_delete_trace(self, tmp_path: Path):
        store = FileGraphStore(tmp_path)
        store.create_trace(_trace("t", 1.0))

        assert store.delete_trace("t") is True
        assert store.get_trace("t") is None
        assert not store.get_trace_path("t").exists()
        assert store.delete_trace("t") is False

    def test_write_failure_raises_persistence_error(self, tmp_path: Path):
        blocker = tmp_path / "blocked"
        blocker.write_text("a file where the directory should be")
        store = FileGraphStore(blocker)

        with pytest.raises(PersistenceError) as exc_info:
            store.create_trace(_trace("t", 1.0))
        assert exc_info.value.retryable is True
