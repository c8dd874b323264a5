"""
Canopy — hierarchical items with inherited permissions.

Items live in a materialized-path tree; permission grants ("memberships")
propagate down that tree. Every mutation runs as a task through the
``TaskRunner``, which applies it atomically and fires pre/post hooks.

Entry point: ``canopy.runtime.CanopyRuntime``.
"""

__version__ = "0.1.0"
__all__ = ["engine", "db", "items", "memberships", "runtime"]
