"""
Decoders for template formats written before the versioned canonical format.

Three shapes exist in stored data:

- bare JSON array:            "[0.1, -0.2, ...]"
- unversioned JSON object:    '{"descriptor": [0.1, -0.2, ...]}'
- multi-descriptor, joined:   "[...]|[...]|[...]"  (one array per capture)

Only template_store.deserialize() and the migration tool should use this
module. New templates are always written in the canonical format.
"""

import json
from typing import Any, List

LEGACY_DELIMITER = "|"


def is_legacy(text: str) -> bool:
    """Return True if the serialized template uses a pre-versioned format."""
    text = text.strip()

    if LEGACY_DELIMITER in text or text.startswith("["):
        return True

    if text.startswith("{"):
        try:
            payload = json.loads(text)
        except ValueError:
            return False
        return isinstance(payload, dict) and "version" not in payload

    return False


def parse_legacy_payload(text: str) -> List[List[float]]:
    """
    Parse a legacy template into one raw value list per stored descriptor.

    Raises:
        ValueError: If any segment is not a legacy descriptor.
    """
    segments = [segment.strip() for segment in text.strip().split(LEGACY_DELIMITER)]

    if any(not segment for segment in segments):
        raise ValueError("Empty segment in delimiter-joined template")

    return [_parse_segment(segment) for segment in segments]


def _parse_segment(segment: str) -> List[float]:
    payload: Any = json.loads(segment)

    # Joined segments may be bare arrays or objects carrying a "descriptor" key
    if isinstance(payload, dict):
        payload = payload.get("descriptor")

    if not isinstance(payload, list):
        raise ValueError(f"Legacy descriptor must be a JSON array, got {type(payload).__name__}")

    return payload
