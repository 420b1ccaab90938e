"""Bulk ad-entity creation engine with credential rotation and rollback."""

__version__ = "0.1.0"
