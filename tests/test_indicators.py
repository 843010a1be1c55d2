"""
Tests for technical indicators.

Checks warmup handling and that no value depends on later inputs.
"""

import pytest

from simtrade_engine.strategies import indicators
from tests.synthetic_bars import trending


class TestMovingAverages:
    """Tests for SMA and EMA."""

    def test_sma_warmup_is_none(self) -> None:
        result = indicators.sma([1.0, 2.0, 3.0, 4.0, 5.0], 3)
        assert result[:2] == [None, None]
        assert result[2:] == pytest.approx([2.0, 3.0, 4.0])

    def test_sma_short_series(self) -> None:
        assert indicators.sma([1.0, 2.0], 5) == [None, None]

    def test_ema_seeded_with_sma(self) -> None:
        result = indicators.ema([2.0, 4.0, 6.0, 8.0], 3)
        assert result[2] == pytest.approx(4.0)
        assert result[3] == pytest.approx((8.0 - 4.0) * 0.5 + 4.0)


class TestOscillators:
    """Tests for RSI, MACD and Bollinger Bands."""

    def test_rsi_all_gains(self) -> None:
        closes = [float(i) for i in range(1, 20)]
        result = indicators.rsi(closes, 14)
        assert result[:14] == [None] * 14
        assert result[14] == 100.0

    def test_rsi_bounds(self) -> None:
        closes = [100, 102, 101, 99, 103, 98, 97, 104, 105, 101, 100, 99, 103, 107, 102, 100]
        values = [v for v in indicators.rsi(closes, 5) if v is not None]
        assert values
        assert all(0.0 <= v <= 100.0 for v in values)

    def test_macd_lengths_and_warmup(self) -> None:
        closes = trending(60)
        line, signal, hist = indicators.macd(closes)
        assert len(line) == len(signal) == len(hist) == 60
        assert line[24] is None and line[25] is not None
        assert signal[32] is None and signal[33] is not None
        assert hist[33] == pytest.approx(line[33] - signal[33])

    def test_bollinger_middle_is_sma(self) -> None:
        closes = trending(30)
        upper, middle, lower = indicators.bollinger_bands(closes, 10)
        assert middle == indicators.sma(closes, 10)
        for u, m, lo in zip(upper[9:], middle[9:], lower[9:], strict=True):
            assert lo <= m <= u


class TestCausality:
    """No indicator value may change when later bars are appended."""

    @pytest.mark.parametrize(
        "compute",
        [
            lambda c: indicators.sma(c, 5),
            lambda c: indicators.ema(c, 5),
            lambda c: indicators.rsi(c, 5),
            lambda c: indicators.macd(c)[2],
            lambda c: indicators.bollinger_bands(c, 5)[0],
        ],
    )
    def test_prefix_stability(self, compute) -> None:
        closes = trending(60)
        full = compute(closes)
        prefix = compute(closes[:40])
        assert prefix == full[:40]


class TestCrossings:
    """Tests for crossover helpers."""

    def test_crossover(self) -> None:
        assert indicators.crossover(1.0, 2.0, 3.0, 2.0)
        assert not indicators.crossover(3.0, 2.0, 4.0, 2.0)

    def test_crossunder(self) -> None:
        assert indicators.crossunder(3.0, 2.0, 1.0, 2.0)
        assert not indicators.crossunder(1.0, 2.0, 0.5, 2.0)
