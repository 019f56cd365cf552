"""storage/__init__.py"""
from .database import Database
from .migrations import apply_migrations
from .repository import (
    AuditRepository,
    BlockRepository,
    ConfigRepository,
    RequestLogRepository,
    RuleRepository,
)

__all__ = [
    "Database",
    "apply_migrations",
    "AuditRepository",
    "BlockRepository",
    "ConfigRepository",
    "RequestLogRepository",
    "RuleRepository",
]
