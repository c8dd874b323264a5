"""Canopy Memberships — permission grants inherited down the item tree."""

from canopy.memberships.models import ItemMembership, PermissionLevel  # noqa: F401

__all__ = ["ItemMembership", "PermissionLevel"]
