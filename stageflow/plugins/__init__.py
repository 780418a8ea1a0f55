# stageflow/plugins/__init__.py
"""
Ready-made plugins.

    from stageflow.plugins import AnalyticsRecorder, create_logging_plugin
"""
from stageflow.plugins.analytics import (  # noqa: F401
    AnalyticsEvent,
    AnalyticsEventType,
    AnalyticsRecorder,
)
from stageflow.plugins.logging_plugin import create_logging_plugin  # noqa: F401
