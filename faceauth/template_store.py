"""
Template Store Module

Encodes face descriptors to storable strings and back.

The canonical format is compact JSON with sorted keys:

    {"descriptor":[...128 floats...],"dim":128,"version":2}

Floats are written with full precision, so deserialize(serialize(d)) == d.
Older formats (bare arrays, unversioned objects, and the delimiter-joined
multi-descriptor format) are decoded transparently by faceauth.legacy_format;
a multi-descriptor template is upgraded to the elementwise average of its
parts.

Usage:
    from faceauth.template_store import serialize, deserialize, average

    template = average(step_descriptors)
    text = serialize(template)
    restored = deserialize(text)
"""

import json
import logging
from fractions import Fraction
from typing import Iterable, List, Sequence

import numpy as np

from faceauth import legacy_format
from faceauth.exceptions import MalformedStoredTemplate

logger = logging.getLogger(__name__)

DESCRIPTOR_DIM = 128
TEMPLATE_FORMAT_VERSION = 2


def as_descriptor(values: Iterable[float], dim: int = DESCRIPTOR_DIM) -> np.ndarray:
    """
    Convert values to an immutable float64 descriptor of the expected length.

    Raises:
        ValueError: On wrong length or non-finite components.
    """
    descriptor = np.array(values, dtype=np.float64).ravel()

    if descriptor.shape[0] != dim:
        raise ValueError(f"Descriptor must have {dim} components, got {descriptor.shape[0]}")
    if not np.all(np.isfinite(descriptor)):
        raise ValueError("Descriptor contains non-finite values")

    descriptor.setflags(write=False)
    return descriptor


def average(descriptors: Sequence[np.ndarray]) -> np.ndarray:
    """
    Elementwise arithmetic mean of same-length descriptors.

    Raises:
        ValueError: If the list is empty or lengths differ.
    """
    if len(descriptors) == 0:
        raise ValueError("No descriptors to average")

    arrays = [np.asarray(d, dtype=np.float64).ravel() for d in descriptors]
    dim = arrays[0].shape[0]
    if any(a.shape[0] != dim for a in arrays):
        raise ValueError(
            f"Cannot average descriptors of different lengths: {[a.shape[0] for a in arrays]}"
        )

    if len(arrays) == 1:
        return as_descriptor(arrays[0], dim)

    stacked = np.stack(arrays)
    if not np.all(np.isfinite(stacked)):
        raise ValueError("Descriptor contains non-finite values")

    # Exact rational sum, rounded once: order independent, and n copies of x average to x
    n = len(arrays)
    mean = [float(sum(map(Fraction, column.tolist()), Fraction(0)) / n) for column in stacked.T]

    return as_descriptor(mean, dim)


def serialize(descriptor: np.ndarray) -> str:
    """Encode a descriptor in the canonical versioned format."""
    values = np.asarray(descriptor, dtype=np.float64).ravel()
    payload = {
        "version": TEMPLATE_FORMAT_VERSION,
        "dim": int(values.shape[0]),
        "descriptor": [float(v) for v in values],
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def deserialize(text: str, dim: int = DESCRIPTOR_DIM) -> np.ndarray:
    """
    Decode a stored template into a descriptor.

    Legacy formats are accepted and upgraded on the fly.

    Raises:
        MalformedStoredTemplate: If the text cannot be decoded.
    """
    if not isinstance(text, str) or not text.strip():
        raise MalformedStoredTemplate("Stored template is empty")

    try:
        if legacy_format.is_legacy(text):
            parts = legacy_format.parse_legacy_payload(text)
            descriptors: List[np.ndarray] = [as_descriptor(p, dim) for p in parts]
            if len(descriptors) > 1:
                logger.info(f"Legacy multi-descriptor template detected, averaging {len(descriptors)} parts")
            return average(descriptors)

        return _decode_canonical(text, dim)
    except (ValueError, TypeError, KeyError) as e:
        logger.error(f"Failed to decode stored template: {e} (data: {text[:100]!r})")
        raise MalformedStoredTemplate(f"Invalid face template format: {e}") from e


def _decode_canonical(text: str, dim: int) -> np.ndarray:
    payload = json.loads(text)

    if not isinstance(payload, dict):
        raise ValueError("Template payload must be a JSON object")

    version = payload.get("version")
    if version != TEMPLATE_FORMAT_VERSION:
        raise ValueError(f"Unsupported template format version: {version!r}")

    stored_dim = payload.get("dim", dim)
    if stored_dim != dim:
        raise ValueError(f"Template dimension {stored_dim} does not match expected {dim}")

    return as_descriptor(payload.get("descriptor", []), dim)


def is_legacy(text: str) -> bool:
    """Return True if the stored template predates the canonical format."""
    return legacy_format.is_legacy(text)


def upgrade(text: str, dim: int = DESCRIPTOR_DIM) -> str:
    """Re-encode any supported template in the canonical format."""
    return serialize(deserialize(text, dim))
