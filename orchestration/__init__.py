"""
Step Tracking Orchestration Layer

Components:
- quota_store: per-preset quota configs and the disabled-mode registry
- session: live tracking sessions and progress bars
- session_log: recorded sessions
- timeline: timeline reconstruction, filtering and statistics
- alerts: alarm evaluation
"""
from orchestration.alerts import Alarm, AlarmEvaluator
from orchestration.quota_store import ModeRegistry, QuotaConfigStore
from orchestration.session import ProgressBar, SessionManager, TrackingSession
from orchestration.session_log import SessionLog
from orchestration.timeline import StepStats, Timeline, TimelineReconstructor

__all__ = [
    'Alarm',
    'AlarmEvaluator',
    'ModeRegistry',
    'QuotaConfigStore',
    'ProgressBar',
    'SessionManager',
    'TrackingSession',
    'SessionLog',
    'StepStats',
    'Timeline',
    'TimelineReconstructor',
]
