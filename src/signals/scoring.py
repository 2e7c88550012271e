"""
Scoring Module - shared score helpers for ranking signals.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Weights of the total ranking score
CONFIDENCE_WEIGHT = 0.5
CONFLUENCE_WEIGHT = 0.3
VOLATILITY_WEIGHT = 0.1
OI_WEIGHT = 0.1

# Volatility score peaks at this value
OPTIMAL_VOLATILITY = 50


def clamp(value: float, min_val: float = 0, max_val: float = 100) -> float:
    """
    Clamp a value to a range.

    Args:
        value: Value to clamp
        min_val: Lower bound
        max_val: Upper bound

    Returns:
        Clamped value
    """
    return max(min_val, min(max_val, value))


def normalize_to_range(value: float, min_input: float, max_input: float,
                       min_output: float = 0, max_output: float = 100) -> float:
    """
    Linearly map a value from one range to another, clamped to the output range.

    Args:
        value: Value to normalize
        min_input: Lower bound of the input range
        max_input: Upper bound of the input range
        min_output: Lower bound of the output range
        max_output: Upper bound of the output range

    Returns:
        Normalized value
    """
    if max_input == min_input:
        return min_output

    normalized = ((value - min_input) / (max_input - min_input)) * (max_output - min_output) + min_output
    return clamp(normalized, min(min_output, max_output), max(min_output, max_output))


def calculate_total_score(
    confidence: float,
    confluence_score: float,
    volatility: Optional[float] = None,
    oi_change: Optional[float] = None,
) -> int:
    """
    Total ranking score (0-100).

    Weights: confidence 50%, confluence 30%, volatility 10%, open interest 10%.
    Moderate volatility (50) scores best; growing open interest scores above
    neutral.

    Args:
        confidence: Signal confidence 0-100
        confluence_score: Multi-timeframe confluence 0-100
        volatility: Volatility score 0-100 (None = 50)
        oi_change: Open interest 24h change in percent (None = 0)

    Returns:
        int: Rounded score 0-100
    """
    safe_confidence = clamp(confidence or 0)
    safe_confluence = clamp(confluence_score or 0)
    safe_volatility = clamp(OPTIMAL_VOLATILITY if volatility is None else volatility)
    safe_oi = 0.0 if oi_change is None else oi_change

    volatility_score = 100 - abs(safe_volatility - OPTIMAL_VOLATILITY)
    oi_score = clamp(50 + safe_oi * 5)

    total = (
        safe_confidence * CONFIDENCE_WEIGHT
        + safe_confluence * CONFLUENCE_WEIGHT
        + volatility_score * VOLATILITY_WEIGHT
        + oi_score * OI_WEIGHT
    )
    return int(round(clamp(total)))
