"""
Collector Service

Runs polling, calibration, alarms and history on one event loop.
"""

from .service import CollectorService, PollRound, RoundListener

__all__ = ["CollectorService", "PollRound", "RoundListener"]
