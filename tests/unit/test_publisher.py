"""Unit tests for the change publishers."""

from modules.workflow.publisher import (
    InMemoryChangePublisher,
    LoggingChangePublisher,
    build_publisher,
    safe_publish,
)


def publish_many(publisher, channel, count):
    for index in range(count):
        publisher.publish(channel, "Tick", {"index": index})


def test_channel_keeps_only_recent_events():
    publisher = InMemoryChangePublisher(max_events=3)

    publish_many(publisher, "host-updates.1", 5)
    events, next_index = publisher.read_events("host-updates.1")

    assert [event.payload["index"] for event in events] == [2, 3, 4]
    assert next_index == 5


def test_cursor_stays_absolute_after_trimming():
    publisher = InMemoryChangePublisher(max_events=3)
    publish_many(publisher, "host-updates.1", 4)

    events, next_index = publisher.read_events("host-updates.1", 3)
    assert [event.payload["index"] for event in events] == [3]
    assert next_index == 4

    publisher.publish("host-updates.1", "Tick", {"index": 4})
    events, next_index = publisher.read_events("host-updates.1", next_index)
    assert [event.payload["index"] for event in events] == [4]
    assert next_index == 5

    events, next_index = publisher.read_events("host-updates.1", next_index)
    assert events == []
    assert next_index == 5


def test_least_recently_published_channel_is_dropped():
    publisher = InMemoryChangePublisher(max_channels=2)

    publisher.publish("host-updates.1", "Tick", {})
    publisher.publish("host-updates.2", "Tick", {})
    publisher.publish("host-updates.1", "Tick", {})
    publisher.publish("host-updates.3", "Tick", {})

    assert publisher.channel_count() == 2
    assert publisher.list_events("host-updates.2") == []
    assert len(publisher.list_events("host-updates.1")) == 2


def test_unknown_channel_reads_empty():
    events, next_index = InMemoryChangePublisher().read_events("nowhere", 7)

    assert events == []
    assert next_index == 7


def test_build_publisher_picks_by_mode():
    assert isinstance(build_publisher("log"), LoggingChangePublisher)
    assert isinstance(build_publisher("memory"), InMemoryChangePublisher)


def test_logging_publisher_logs_the_status(caplog):
    with caplog.at_level("INFO", logger="modules.workflow.publisher"):
        LoggingChangePublisher().publish(
            "host-updates.1", "HostProvisioningStatusUpdated", {"status": "provisioning", "currentStep": "installing_docker"}
        )

    assert "status=provisioning step=installing_docker" in caplog.text


def test_safe_publish_swallows_transport_errors(caplog):
    class BrokenPublisher:
        def publish(self, channel, event, payload):
            raise ConnectionError("broker down")

    safe_publish(BrokenPublisher(), "host-updates.1", "Tick", {})

    assert "broker down" in caplog.text
