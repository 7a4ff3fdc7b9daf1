"""Database module."""
from access_portal.db.database import close_db, get_db, init_db
from access_portal.db.models import (
    AccessGrant,
    AccessRequest,
    AccessRequestItem,
    AccessTier,
    AuditLog,
    Base,
    System,
    SystemInstance,
    SystemOwner,
    User,
    UserRole,
)

__all__ = [
    "get_db",
    "init_db",
    "close_db",
    "Base",
    "User",
    "UserRole",
    "System",
    "SystemInstance",
    "AccessTier",
    "SystemOwner",
    "AccessGrant",
    "AccessRequest",
    "AccessRequestItem",
    "AuditLog",
]
