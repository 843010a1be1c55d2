"""
Technical indicators for rule evaluation.

All functions are pure and deterministic - same inputs always produce same outputs.
Each output index depends only on inputs up to that index (no lookahead).
Warmup positions are None instead of being backfilled from later values.
"""

from collections.abc import Sequence

Series = list[float | None]


def sma(values: Sequence[float], period: int) -> Series:
    """
    Calculate Simple Moving Average.

    Args:
        values: Price series
        period: SMA period

    Returns:
        SMA values, None for the first period-1 entries
    """
    result: Series = [None] * len(values)
    if period < 1 or len(values) < period:
        return result

    window_sum = sum(values[:period])
    result[period - 1] = window_sum / period
    for i in range(period, len(values)):
        window_sum += values[i] - values[i - period]
        result[i] = window_sum / period

    return result


def ema(values: Sequence[float], period: int) -> Series:
    """
    Calculate Exponential Moving Average, seeded with the first full-period SMA.

    Args:
        values: Price series
        period: EMA period

    Returns:
        EMA values, None for the first period-1 entries
    """
    result: Series = [None] * len(values)
    if period < 1 or len(values) < period:
        return result

    multiplier = 2.0 / (period + 1)
    prev = sum(values[:period]) / period
    result[period - 1] = prev
    for i in range(period, len(values)):
        prev = (values[i] - prev) * multiplier + prev
        result[i] = prev

    return result


def rsi(closes: Sequence[float], period: int = 14) -> Series:
    """
    Calculate Relative Strength Index with Wilder smoothing.

    Args:
        closes: Close prices
        period: RSI period (default 14)

    Returns:
        RSI values (0-100), None for the first period entries
    """
    result: Series = [None] * len(closes)
    if period < 1 or len(closes) < period + 1:
        return result

    gains = [0.0] * len(closes)
    losses = [0.0] * len(closes)
    for i in range(1, len(closes)):
        change = closes[i] - closes[i - 1]
        if change > 0:
            gains[i] = change
        else:
            losses[i] = -change

    avg_gain = sum(gains[1 : period + 1]) / period
    avg_loss = sum(losses[1 : period + 1]) / period
    result[period] = _rsi_value(avg_gain, avg_loss)

    for i in range(period + 1, len(closes)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        result[i] = _rsi_value(avg_gain, avg_loss)

    return result


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def macd(
    closes: Sequence[float],
    fast_period: int = 12,
    slow_period: int = 26,
    signal_period: int = 9,
) -> tuple[Series, Series, Series]:
    """
    Calculate MACD (Moving Average Convergence Divergence).

    Args:
        closes: Close prices
        fast_period: Fast EMA period (default 12)
        slow_period: Slow EMA period (default 26)
        signal_period: Signal line period (default 9)

    Returns:
        Tuple of (macd_line, signal_line, histogram)
    """
    fast = ema(closes, fast_period)
    slow = ema(closes, slow_period)
    macd_line: Series = [
        f - s if f is not None and s is not None else None
        for f, s in zip(fast, slow, strict=True)
    ]

    # Signal line is an EMA over the defined part of the MACD line
    first = next((i for i, v in enumerate(macd_line) if v is not None), len(macd_line))
    defined = [v for v in macd_line[first:] if v is not None]
    signal_line: Series = [None] * first + ema(defined, signal_period)

    histogram: Series = [
        m - s if m is not None and s is not None else None
        for m, s in zip(macd_line, signal_line, strict=True)
    ]
    return macd_line, signal_line, histogram


def bollinger_bands(
    closes: Sequence[float],
    period: int = 20,
    std_dev: float = 2.0,
) -> tuple[Series, Series, Series]:
    """
    Calculate Bollinger Bands (population standard deviation).

    Args:
        closes: Close prices
        period: SMA period (default 20)
        std_dev: Standard deviation multiplier (default 2.0)

    Returns:
        Tuple of (upper_band, middle_band, lower_band)
    """
    middle = sma(closes, period)
    upper: Series = [None] * len(closes)
    lower: Series = [None] * len(closes)

    for i in range(period - 1, len(closes)):
        mean = middle[i]
        if mean is None:
            continue
        window = closes[i - period + 1 : i + 1]
        variance = sum((x - mean) ** 2 for x in window) / period
        band = std_dev * variance**0.5
        upper[i] = mean + band
        lower[i] = mean - band

    return upper, middle, lower


# =============================================================================
# Utility Functions
# =============================================================================


def crossover(prev_a: float, prev_b: float, curr_a: float, curr_b: float) -> bool:
    """Check if series a crossed above series b between two consecutive bars."""
    return prev_a <= prev_b and curr_a > curr_b


def crossunder(prev_a: float, prev_b: float, curr_a: float, curr_b: float) -> bool:
    """Check if series a crossed below series b between two consecutive bars."""
    return prev_a >= prev_b and curr_a < curr_b
