"""Numeric helper functions used by the reducer and the workbook writer."""

import math

import numpy as np


def round_half_up(value: float, digits: int = 2) -> float:
    """Round to ``digits`` decimals with ties going toward +inf (-60.605 -> -60.6)."""
    scale = 10.0 ** digits
    return float(np.floor(float(value) * scale + 0.5) / scale)


def is_finite_number(value: object) -> bool:
    """True for real ints/floats that are finite; bools are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # JSON integers are unbounded; one too large for a float is not a reading.
        return False
