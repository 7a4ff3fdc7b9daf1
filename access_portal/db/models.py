"""SQLAlchemy database models."""
import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, String, Text, UniqueConstraint, func, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class User(Base):
    """Employee identity with an optional direct manager."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # Always stored lowercased
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Direct manager (self reference, kept acyclic by the users service)
    manager_id: Mapped[str | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Address used for Slack lookups when it differs from the login email
    slack_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Soft delete tombstone
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    # Relationships
    manager: Mapped["User | None"] = relationship(
        "User",
        back_populates="direct_reports",
        remote_side="User.id",
    )
    direct_reports: Mapped[list["User"]] = relationship(
        "User",
        back_populates="manager",
    )
    roles: Mapped[list["UserRole"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class UserRole(Base):
    """Explicitly assigned role (currently only "admin")."""

    __tablename__ = "user_roles"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=func.now())

    user: Mapped["User"] = relationship(back_populates="roles")

    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_role"),)


class System(Base):
    """Business system that access can be requested for (e.g. Magento)."""

    __tablename__ = "systems"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(String(500))

    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    instances: Mapped[list["SystemInstance"]] = relationship(
        back_populates="system", cascade="all, delete-orphan"
    )
    access_tiers: Mapped[list["AccessTier"]] = relationship(
        back_populates="system", cascade="all, delete-orphan"
    )
    owners: Mapped[list["SystemOwner"]] = relationship(
        back_populates="system", cascade="all, delete-orphan"
    )


class SystemInstance(Base):
    """Environment-scoped deployment of a system (e.g. "UCOOK Production")."""

    __tablename__ = "system_instances"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    system_id: Mapped[str] = mapped_column(
        ForeignKey("systems.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    region: Mapped[str | None] = mapped_column(String(50))
    environment: Mapped[str | None] = mapped_column(String(50))

    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    system: Mapped["System"] = relationship(back_populates="instances")

    __table_args__ = (
        UniqueConstraint("system_id", "name", name="uq_system_instance_name"),
    )


class AccessTier(Base):
    """Permission level scoped to a system, valid on all of its instances."""

    __tablename__ = "access_tiers"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    system_id: Mapped[str] = mapped_column(
        ForeignKey("systems.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500))

    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    system: Mapped["System"] = relationship(back_populates="access_tiers")

    __table_args__ = (
        UniqueConstraint("system_id", "name", name="uq_access_tier_name"),
    )


class SystemOwner(Base):
    """Authorizes a user to provision and remove grants for a system."""

    __tablename__ = "system_owners"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    system_id: Mapped[str] = mapped_column(
        ForeignKey("systems.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(default=func.now())

    user: Mapped["User"] = relationship()
    system: Mapped["System"] = relationship(back_populates="owners")

    __table_args__ = (
        UniqueConstraint("user_id", "system_id", name="uq_system_owner"),
    )


class AccessGrant(Base):
    """Ledger row: a user holds a tier on a system instance."""

    __tablename__ = "access_grants"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    system_instance_id: Mapped[str] = mapped_column(
        ForeignKey("system_instances.id"), nullable=False, index=True
    )
    access_tier_id: Mapped[str] = mapped_column(
        ForeignKey("access_tiers.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default="active", nullable=False, index=True
    )  # active, to_remove, removed
    granted_by_id: Mapped[str | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    granted_at: Mapped[datetime] = mapped_column(default=func.now())
    # Set only while status is "removed"
    removed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    user: Mapped["User"] = relationship(foreign_keys=[user_id])
    granted_by: Mapped["User | None"] = relationship(foreign_keys=[granted_by_id])
    system_instance: Mapped["SystemInstance"] = relationship()
    access_tier: Mapped["AccessTier"] = relationship()

    __table_args__ = (
        # At most one active grant per (user, instance, tier)
        Index(
            "uq_access_grants_active",
            "user_id",
            "system_instance_id",
            "access_tier_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )


class AccessRequest(Base):
    """Submission asking for one or more grants on behalf of a target user."""

    __tablename__ = "access_requests"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    target_user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    requester_id: Mapped[str] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default="requested", nullable=False, index=True
    )  # requested, approved, rejected
    # Doubles as the rejection reason
    note: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    target_user: Mapped["User"] = relationship(foreign_keys=[target_user_id])
    requester: Mapped["User"] = relationship(foreign_keys=[requester_id])
    items: Mapped[list["AccessRequestItem"]] = relationship(
        back_populates="access_request",
        cascade="all, delete-orphan",
        order_by="AccessRequestItem.position",
    )


class AccessRequestItem(Base):
    """Single (instance, tier) line of an access request."""

    __tablename__ = "access_request_items"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    access_request_id: Mapped[str] = mapped_column(
        ForeignKey("access_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Order within the request as submitted
    position: Mapped[int] = mapped_column(default=0)
    system_instance_id: Mapped[str] = mapped_column(
        ForeignKey("system_instances.id"), nullable=False
    )
    access_tier_id: Mapped[str] = mapped_column(
        ForeignKey("access_tiers.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default="requested", nullable=False, index=True
    )  # requested, approved, rejected
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    access_grant_id: Mapped[str | None] = mapped_column(
        ForeignKey("access_grants.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    access_request: Mapped["AccessRequest"] = relationship(back_populates="items")
    system_instance: Mapped["SystemInstance"] = relationship()
    access_tier: Mapped["AccessTier"] = relationship()
    access_grant: Mapped["AccessGrant | None"] = relationship()


class AuditLog(Base):
    """Append-only trail of workflow transitions."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    action: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    target_user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    resource_type: Mapped[str] = mapped_column(String(50), index=True, nullable=False)  # access_request, access_request_item, access_grant
    resource_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    details_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=func.now(), index=True, nullable=False
    )

    __table_args__ = (
        Index("ix_audit_actor_resource", "actor_id", "resource_type"),
        Index("ix_audit_resource", "resource_type", "resource_id"),
    )
