"""
Base class for score-producing analyzers.
"""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class BaseAnalyzer(ABC):
    """
    Base class for analyzers that condense their analysis into a bias score.

    Subclasses implement get_score; the range is documented per analyzer.
    """

    def __init__(self):
        """Initialize the per-class logger."""
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def get_score(self, *args, **kwargs) -> float:
        """
        Return the analyzer's bias score.

        Returns:
            float: Score in the analyzer's documented range
        """
        pass

    def clamp(self, value: float, min_val: float, max_val: float) -> float:
        """
        Clamp a value to a range.

        Args:
            value: Value to clamp
            min_val: Lower bound
            max_val: Upper bound

        Returns:
            float: Clamped value
        """
        return max(min_val, min(max_val, value))
