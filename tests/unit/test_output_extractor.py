"""Unit tests for sentinel-delimited output extraction."""

import pytest

from core.exceptions import ExtractionFailure
from utils.output_extractor import (
    PORT_MARKER,
    extract_published_port,
    extract_sentinel_lines,
    parse_container_listing,
    primary_container,
    require_json_payload,
)


def test_container_listing_round_trip():
    output = (
        '__DOCKER_PS_START__\n'
        '{"ID":"abc","Name":"n1","Publishers":[{"PublishedPort":8080}]}\n'
        '__DOCKER_PS_END__'
    )

    containers = parse_container_listing(output)

    assert len(containers) == 1
    assert containers[0]["ID"] == "abc"
    assert containers[0]["Name"] == "n1"
    assert extract_published_port(primary_container(containers)) == 8080


def test_malformed_line_is_skipped():
    output = (
        "pulling images...\n"
        "__DOCKER_PS_START__\n"
        '{"ID":"abc","Name":"n1","Publishers":[]}\n'
        '{"ID":"def","Name":"n2","Publ\n'
        "__DOCKER_PS_END__\n"
        "done\n"
    )

    containers = parse_container_listing(output)

    assert [c["ID"] for c in containers] == ["abc"]


def test_blank_and_non_object_lines_are_ignored():
    output = "__PORT_START__\n\n42\n[1, 2]\n{\"ssh_port\": 18000}\n   \n__PORT_END__"

    assert extract_sentinel_lines(output, PORT_MARKER) == [{"ssh_port": 18000}]


@pytest.mark.parametrize(
    "output",
    [
        "",
        "no markers at all",
        "__DOCKER_PS_START__\n{\"ID\": \"abc\"}\n",  # never closed
    ],
)
def test_missing_region_yields_empty_listing(output):
    assert parse_container_listing(output) == []
    assert primary_container(parse_container_listing(output)) is None


def test_first_container_is_primary():
    output = (
        "__DOCKER_PS_START__\n"
        '{"ID":"db","Name":"postgres","Publishers":[]}\n'
        '{"ID":"web","Name":"nginx","Publishers":[{"PublishedPort":80}]}\n'
        "__DOCKER_PS_END__"
    )

    primary = primary_container(parse_container_listing(output))

    assert primary["ID"] == "db"
    assert extract_published_port(primary) is None


@pytest.mark.parametrize(
    "container, expected",
    [
        ({"Publishers": [{"TargetPort": 22}, {"PublishedPort": 2201}]}, 2201),
        ({"Publishers": [{"PublishedPort": 0}, {"PublishedPort": "9000"}]}, 9000),
        ({"Publishers": None}, None),
        ({}, None),
        (None, None),
    ],
)
def test_extract_published_port(container, expected):
    assert extract_published_port(container) == expected


def test_only_the_marked_region_is_read():
    output = (
        "__PORT_START__\n{\"ssh_port\": 18001}\n__PORT_END__\n"
        "__DOCKER_PS_START__\n{\"ID\": \"abc\"}\n__DOCKER_PS_END__\n"
    )

    assert parse_container_listing(output) == [{"ID": "abc"}]
    assert require_json_payload(output, PORT_MARKER, "ssh_port") == {"ssh_port": 18001}


def test_require_json_payload_raises_when_key_missing():
    output = "__PORT_START__\n{\"other\": 1}\n__PORT_END__"

    with pytest.raises(ExtractionFailure, match="ssh_port"):
        require_json_payload(output, PORT_MARKER, "ssh_port")
