"""
pgupgrader - PostgreSQL cluster lifecycle and in-place major-version upgrades
"""

__version__ = "0.1.0"

from .core import PostgresUpgrader, UpgraderError

__all__ = ["PostgresUpgrader", "UpgraderError"]
