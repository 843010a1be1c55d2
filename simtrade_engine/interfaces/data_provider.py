"""
BarProvider interface.

Defines the contract for historical bar access.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from simtrade_engine.domain.bar import Bar, BarInterval


class BarProvider(ABC):
    """
    Abstract base class for historical bar sources.
    """

    @abstractmethod
    async def load_bars(
        self,
        symbol: str,
        interval: BarInterval,
        start: datetime,
        end: datetime,
    ) -> list[Bar]:
        """
        Load historical bars for a symbol.

        Args:
            symbol: Instrument symbol
            interval: Bar interval
            start: First timestamp to include
            end: Last timestamp to include

        Returns:
            Bars with start <= timestamp <= end, oldest first. An empty list
            means the range holds no data.

        Raises:
            DataLoadError: The source could not be read.
        """
