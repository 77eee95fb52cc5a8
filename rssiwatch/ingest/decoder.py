"""Best-effort decoding of gateway telemetry payloads into samples.

Gateways publish JSON of the form::

    {"device_info": {"mac": "AA:BB:..."}, "data": [{"mac": "11:22:...", "rssi": -61}, ...]}

``device_info.mac`` identifies the reporting gateway (the sample source);
each ``data`` entry is one tag/device detection heard by that gateway. The
bus is noisy, so anything that does not match this shape is dropped here
and never raised to the caller.
"""

from __future__ import annotations

import json
from typing import Any, FrozenSet, List, Optional, Tuple, Union

from rssiwatch.util.math import is_finite_number
from rssiwatch.window.types import (
    CollectionContext,
    DecodedMessage,
    Detection,
    PointContext,
    Sample,
    SurveyContext,
)


def normalize_source_id(raw: str) -> str:
    return raw.strip().upper()


def decode_message(payload: Union[bytes, bytearray, str]) -> Optional[DecodedMessage]:
    """Return the decoded message, or None when the payload is not gateway telemetry."""

    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else str(payload)
        doc = json.loads(text)
    except (UnicodeDecodeError, ValueError, RecursionError):
        return None
    if not isinstance(doc, dict):
        return None
    device_info = doc.get("device_info")
    if not isinstance(device_info, dict):
        return None
    mac = device_info.get("mac")
    if not isinstance(mac, str) or not mac.strip():
        return None
    entries = doc.get("data")
    if not isinstance(entries, list):
        return None

    detections: List[Detection] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        detections.append(Detection(entry_id=_entry_id(entry), rssi=_rssi(entry)))
    return DecodedMessage(source_id=normalize_source_id(mac), detections=tuple(detections))


def extract_samples(
    message: Optional[DecodedMessage],
    context: Optional[CollectionContext],
    observed_at: float,
) -> Tuple[List[Sample], FrozenSet[str]]:
    """Filter a decoded message against the active context.

    Returns the samples to buffer and the source ids to mark as observed.
    Survey contexts observe every gateway they hear, even one whose
    detections carry no usable RSSI; point contexts only observe the
    filtered gateway once it has produced a sample.
    """

    if message is None or context is None:
        return [], frozenset()
    if isinstance(context, PointContext) and message.source_id != context.source_filter:
        return [], frozenset()

    samples = [
        Sample(source_id=message.source_id, value=float(det.rssi), observed_at=observed_at)
        for det in message.detections
        if det.rssi is not None
    ]
    if isinstance(context, SurveyContext) or samples:
        return samples, frozenset({message.source_id})
    return samples, frozenset()


def _entry_id(entry: dict) -> Optional[str]:
    mac = entry.get("mac")
    if isinstance(mac, str) and mac.strip():
        return normalize_source_id(mac)
    return None


def _rssi(entry: dict) -> Optional[float]:
    value: Any = entry.get("rssi")
    if not is_finite_number(value):
        return None
    return float(value)
