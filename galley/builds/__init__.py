"""Build orchestration module.

This module handles:
- Phase selection and prerequisite checks
- Source sync and workspace setup
- Vendor extraction, customization and signing keys
- Kernel and ROM builds
- Root patching and release bookkeeping
"""

from galley.builds.phases import BuildContext, PhaseFlags

__all__ = ["BuildContext", "PhaseFlags"]

# Phase implementations live in submodules (galley.builds.sync, .keys, ...)
# and are imported by galley.builds.orchestrator.
