"""
History Service

- aggregator.py - fixed-window means with a persisted watermark
- retention.py - raw sample cleanup at local midnight
"""

from .aggregator import HistoryAggregator
from .retention import RetentionCleaner

__all__ = ["HistoryAggregator", "RetentionCleaner"]
