"""
Registration-open watching
"""
from .classifier import OpenSignalClassifier, ProbeError
from .poller import AdaptivePoller, select_interval
from .window import SeasonCalendar, TargetWindowResolver, parse_target_date

__all__ = [
    "OpenSignalClassifier",
    "ProbeError",
    "AdaptivePoller",
    "select_interval",
    "SeasonCalendar",
    "TargetWindowResolver",
    "parse_target_date",
]
