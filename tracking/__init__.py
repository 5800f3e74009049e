"""
Step Tracking Algorithms
"""
from tracking.observations import ExpansionPolicy, prepare_batch
from tracking.progress_tracker import OnlineProgressTracker, TrackerConfig
from tracking.segmenter import OfflineSegmenter, SegmenterConfig

__all__ = [
    'ExpansionPolicy',
    'prepare_batch',
    'OnlineProgressTracker',
    'TrackerConfig',
    'OfflineSegmenter',
    'SegmenterConfig',
]
