import json
import re
import logging
from typing import Any, Dict, List, Optional

from core.exceptions import ExtractionFailure

logger = logging.getLogger(__name__)

DOCKER_PS_MARKER = "DOCKER_PS"
PORT_MARKER = "PORT"


def _region_pattern(marker: str):
    return re.compile(
        rf"__{re.escape(marker)}_START__\s*?\n(.*?)__{re.escape(marker)}_END__",
        re.DOTALL,
    )


def extract_sentinel_lines(output: str, marker: str) -> List[Dict[str, Any]]:
    """
    Decode every JSON object line between ``__<MARKER>_START__`` and
    ``__<MARKER>_END__``.

    Lines are decoded independently; blank, malformed or non-object lines
    are skipped. A missing region yields an empty list.
    """
    if not output:
        return []

    match = _region_pattern(marker).search(output)
    if not match:
        return []

    items = []
    for line in match.group(1).splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            decoded = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed {marker} line: {line[:80]}")
            continue
        if isinstance(decoded, dict):
            items.append(decoded)
    return items


def parse_container_listing(output: str) -> List[Dict[str, Any]]:
    return extract_sentinel_lines(output, DOCKER_PS_MARKER)


def primary_container(containers: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return containers[0] if containers else None


def extract_published_port(container: Optional[Dict[str, Any]]) -> Optional[int]:
    if not container:
        return None
    for publisher in container.get("Publishers") or []:
        if not isinstance(publisher, dict):
            continue
        port = publisher.get("PublishedPort")
        if port:
            try:
                return int(port)
            except (TypeError, ValueError):
                continue
    return None


def require_json_payload(output: str, marker: str, key: str) -> Dict[str, Any]:
    """Return the first sentinel line carrying ``key`` or raise ``ExtractionFailure``."""
    for item in extract_sentinel_lines(output, marker):
        if item.get(key) is not None:
            return item
    raise ExtractionFailure(f"No '{key}' returned between __{marker}_START__ and __{marker}_END__")
