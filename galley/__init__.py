"""Galley - build orchestration for custom GrapheneOS releases.

This package sequences the external tools that sync, customize, sign and
package a GrapheneOS build, and provides a release monitor that re-runs the
build when upstream publishes a new tag.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
