"""Unit tests for the append-only audit log."""

import re

import pytest

from core.exceptions import UnsupportedEntity
from core.notes import append_note, get_notes
from modules.executions.models import ExecutionRecord

TIMESTAMPED = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] (.+)$")


def test_append_note_adds_timestamped_lines(db, host):
    before = get_notes(host).splitlines()

    append_note(db, host, "Updating server packages")
    append_note(db, host, "Server packages updated")

    db.expire_all()
    lines = get_notes(db.get(type(host), host.id)).splitlines()
    assert lines[:len(before)] == before
    new_lines = lines[len(before):]
    assert [TIMESTAMPED.match(line).group(1) for line in new_lines] == [
        "Updating server packages",
        "Server packages updated",
    ]


def test_append_note_without_timestamp(db, host):
    line = append_note(db, host, "plain entry", timestamp=False)

    assert line == "plain entry"
    assert get_notes(host).endswith("\nplain entry")


def test_entity_without_notes_is_rejected(db):
    record = ExecutionRecord(script_name="x", status="running")

    with pytest.raises(UnsupportedEntity, match="notes"):
        append_note(db, record, "nope")
    with pytest.raises(UnsupportedEntity):
        get_notes(record)
