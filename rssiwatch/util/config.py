"""
Configuration for the collector tools.

All RSSIWATCH_* environment variables are parsed here. The CLI builds a
CollectorConfig from the environment and then applies its own flags on top,
so nothing else in the package reads os.environ directly.
"""
from __future__ import annotations

import argparse
import math
import os
from dataclasses import dataclass, replace
from typing import Any, Optional

from rssiwatch.util.duration import parse_duration_to_seconds

DEFAULT_BROKER_URL = "mqtt://localhost:1883"
DEFAULT_TOPIC = "#"
DEFAULT_WINDOW_S = 60.0


def _int_env(name: str, default: int) -> int:
    """Parse an integer from environment, returning default on missing/invalid."""
    val = os.getenv(name)
    if not val:
        return default
    try:
        return max(1, int(float(val)))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    """Parse a positive float from environment, returning default on missing/invalid."""
    val = os.getenv(name)
    if not val:
        return default
    try:
        parsed = float(val)
    except ValueError:
        return default
    if not math.isfinite(parsed) or parsed <= 0:
        return default
    return parsed


def _duration_env(name: str, default: float) -> float:
    val = os.getenv(name)
    if not val:
        return default
    try:
        seconds = parse_duration_to_seconds(val)
    except argparse.ArgumentTypeError:
        return default
    if seconds is None or not math.isfinite(seconds) or seconds <= 0:
        return default
    return seconds


@dataclass(frozen=True)
class CollectorConfig:
    """Runtime settings shared by the calibration and fingerprint tools."""

    broker_url: str = DEFAULT_BROKER_URL
    topic: str = DEFAULT_TOPIC
    window_s: float = DEFAULT_WINDOW_S
    output_path: Optional[str] = None
    write_attempts: int = 3
    progress_interval_s: float = 1.0
    connect_timeout_s: float = 10.0

    @classmethod
    def from_env(cls) -> "CollectorConfig":
        broker = os.getenv("RSSIWATCH_BROKER_URL") or os.getenv("MQTT_BROKER_URL") or DEFAULT_BROKER_URL
        return cls(
            broker_url=broker,
            topic=os.getenv("RSSIWATCH_TOPIC") or DEFAULT_TOPIC,
            window_s=_duration_env("RSSIWATCH_WINDOW", DEFAULT_WINDOW_S),
            output_path=os.getenv("RSSIWATCH_OUTPUT") or None,
            write_attempts=_int_env("RSSIWATCH_WRITE_ATTEMPTS", 3),
            progress_interval_s=_float_env("RSSIWATCH_PROGRESS_INTERVAL", 1.0),
            connect_timeout_s=_float_env("RSSIWATCH_CONNECT_TIMEOUT", 10.0),
        )

    def with_overrides(self, **overrides: Any) -> "CollectorConfig":
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)
