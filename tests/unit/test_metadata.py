"""Unit tests for the per-entity metadata bag."""

import pytest

from core.exceptions import MetadataKeyNotFound, UnsupportedEntity
from core.metadata import MetadataBag, deep_merge


def test_get_missing_key_raises_with_context(db, host):
    bag = MetadataBag(db, host)
    bag.merge({"ssh_port": 18001, "username": "user_1"})

    with pytest.raises(MetadataKeyNotFound) as exc_info:
        bag.get("container_name")

    error = exc_info.value
    assert error.key == "container_name"
    assert error.available_keys == ["ssh_port", "username"]
    assert error.entity_type == "Host"
    assert error.entity_id == host.id
    assert error.caller["function"] == "test_get_missing_key_raises_with_context"
    assert "container_name" in str(error)
    assert "ssh_port, username" in str(error)


def test_get_with_default_does_not_raise(db, host):
    bag = MetadataBag(db, host)

    assert bag.get("missing", None) is None
    assert bag.get("missing", 5) == 5


def test_merge_overwrite_replaces_overlapping_keys(db, host):
    bag = MetadataBag(db, host)
    bag.merge({"containers": [{"ID": "a"}], "labels": {"a": 1}})

    bag.merge({"containers": [{"ID": "b"}], "labels": {"b": 2}})

    assert bag.get("containers") == [{"ID": "b"}]
    assert bag.get("labels") == {"b": 2}


def test_merge_without_overwrite_deep_merges(db, host):
    bag = MetadataBag(db, host)
    bag.merge({"containers": [{"ID": "a"}], "labels": {"a": 1}, "name": "old"})

    bag.merge({"containers": [{"ID": "b"}], "labels": {"b": 2}, "name": "new"}, overwrite=False)

    assert bag.get("containers") == [{"ID": "a"}, {"ID": "b"}]
    assert bag.get("labels") == {"a": 1, "b": 2}
    assert bag.get("name") == "new"


def test_writes_persist_immediately_and_bump_version(db, host):
    bag = MetadataBag(db, host)
    start = bag.version

    bag.set("ssh_port", 18001)
    bag.append("events", "created")
    bag.append("events", "started")
    bag.delete("ssh_port")

    db.expire_all()
    reloaded = db.get(type(host), host.id)
    assert reloaded.meta["events"] == ["created", "started"]
    assert "ssh_port" not in reloaded.meta
    assert reloaded.metadata_version == start + 4


def test_add_missing_keeps_existing_values(db, host):
    bag = MetadataBag(db, host)
    bag.set("username", "user_1")

    bag.add_missing({"username": "other", "password": "pw"})

    assert bag.get_all() == {"username": "user_1", "password": "pw"}


def test_increment_and_decrement(db, host):
    bag = MetadataBag(db, host)

    assert bag.increment("retries") == 1
    assert bag.increment("retries", 2) == 3
    assert bag.decrement("retries") == 2


def test_returned_values_are_copies(db, host):
    bag = MetadataBag(db, host)
    bag.set("step_history", {"a": {"status": "completed"}})

    history = bag.get("step_history")
    history["a"]["status"] = "tampered"

    assert bag.get("step_history") == {"a": {"status": "completed"}}
    assert bag.has("step_history") is True
    assert bag.has("nope") is False


def test_entity_without_metadata_column_is_rejected(db):
    with pytest.raises(UnsupportedEntity):
        MetadataBag(db, object())


def test_deep_merge_is_non_destructive():
    base = {"a": {"x": [1]}}

    merged = deep_merge(base, {"a": {"x": [2], "y": 3}})

    assert merged == {"a": {"x": [1, 2], "y": 3}}
    assert base == {"a": {"x": [1]}}
