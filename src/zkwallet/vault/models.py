"""SQLAlchemy models for the encrypted vault."""

from datetime import datetime

from sqlalchemy import DateTime, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class VaultEntry(Base):
    """One stored value for an identity.

    Values are opaque to the storage layer; secrets arrive already encrypted.
    """

    __tablename__ = "vault_entries"
    __table_args__ = (UniqueConstraint("identity", "field", name="uq_vault_identity_field"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    identity: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    field: Mapped[str] = mapped_column(String(64), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
