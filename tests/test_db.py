import sqlite3

import pytest

from smr import db
from smr.models import MergeState, ResourceId

RID = ResourceId("default", "merger")


def _active_state() -> MergeState:
    return MergeState(
        active=True,
        services={"a", "b"},
        port_by_service={"a": 80, "b": 81},
        merged_pod_ids={"a-1", "b-1"},
        merged_service_name="merged-service",
    )


def test_state_survives_reload():
    db.save_state(RID, _active_state())
    # A fresh load reads only what is on disk.
    assert db.load_state(RID) == _active_state()


def test_unknown_resource_is_inactive():
    assert db.load_state(ResourceId("default", "nothing")) == MergeState()


def test_inactive_save_clears_the_record():
    db.save_state(RID, _active_state())
    db.save_state(RID, MergeState())

    conn = sqlite3.connect(db._resolve_db_path())
    rows = conn.execute("SELECT COUNT(*) FROM merge_states").fetchone()
    conn.close()
    assert rows[0] == 0


def test_invariants_are_enforced():
    with pytest.raises(ValueError):
        db.save_state(RID, MergeState(active=False, services={"a"}))
    with pytest.raises(ValueError):
        db.save_state(RID, MergeState(active=True, services={"a"}, port_by_service={}))


def test_captured_ports_journal_is_cleared_on_save():
    db.record_captured_ports(RID, {"a": 80})
    db.record_captured_ports(RID, {"b": 81})
    assert db.captured_ports(RID) == {"a": 80, "b": 81}

    db.save_state(RID, _active_state())
    assert db.captured_ports(RID) == {}


def test_list_states_and_events():
    other = ResourceId("team", "m2")
    db.save_state(RID, _active_state())
    db.save_state(other, _active_state())
    assert [r.resource_id for r in db.list_states(active_only=True)] == ["default/merger", "team/m2"]

    db.log_event("info", "hello", resource=RID, service="a")
    db.log_event("WARN", "other", resource=other)
    ev = db.latest_events(limit=5, resource="default/merger")
    assert len(ev) == 1
    assert ev[0]["level"] == "INFO"
    assert ev[0]["service"] == "a"
    assert ev[0]["message"] == "hello"


def test_selectors_are_persisted_and_journaled():
    state = _active_state()
    state.selector_by_service = {"a": {"app": "alpha"}}
    db.save_state(RID, state)
    assert db.load_state(RID).selector_by_service == {"a": {"app": "alpha"}}

    other = ResourceId("default", "m2")
    db.record_captured_ports(other, {"a": 80, "b": 81}, {"a": {"app": "alpha"}})
    assert db.captured_selectors(other) == {"a": {"app": "alpha"}}


def test_init_db_upgrades_older_tables():
    path = db._resolve_db_path()
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        DROP TABLE merge_states;
        DROP TABLE captured_ports;
        CREATE TABLE merge_states (
          resource_id TEXT PRIMARY KEY,
          active INTEGER NOT NULL,
          services TEXT NOT NULL,
          port_by_service TEXT NOT NULL,
          merged_pod_ids TEXT NOT NULL,
          merged_service_name TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );
        CREATE TABLE captured_ports (
          resource_id TEXT NOT NULL,
          service TEXT NOT NULL,
          port INTEGER NOT NULL,
          captured_at TEXT NOT NULL,
          PRIMARY KEY (resource_id, service)
        );
        INSERT INTO merge_states VALUES ('default/old', 1, '["a"]', '{"a": 80}', '[]', 'merged-service', '2024-01-01T00:00:00Z');
        """
    )
    conn.commit()
    conn.close()

    db.init_db()

    old = db.load_state(ResourceId("default", "old"))
    assert old.services == {"a"}
    assert old.selector_by_service == {}
    db.save_state(RID, _active_state())
    assert db.load_state(RID) == _active_state()
