"""Release monitor module.

This module handles:
- Fetching upstream release tags
- Persisting monitor and monthly cadence state
- Deciding when a new tag should trigger a build
- The polling loop
"""

from galley.monitor.service import ReleaseMonitor
from galley.monitor.state import MonitorState, MonthlyBuildState, StateStore

__all__ = ["MonitorState", "MonthlyBuildState", "ReleaseMonitor", "StateStore"]
