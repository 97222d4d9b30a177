"""Repository for vault entries."""

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from zkwallet.vault.models import VaultEntry


class VaultRepository:
    """Key-value access to vault entries keyed by (identity, field)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, identity: str, field: str) -> Optional[str]:
        """Get a stored value, or None if absent."""
        stmt = select(VaultEntry.value).where(
            VaultEntry.identity == identity, VaultEntry.field == field
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def set(self, identity: str, field: str, value: str) -> VaultEntry:
        """Store a value, replacing any previous one (last writer wins)."""
        stmt = select(VaultEntry).where(
            VaultEntry.identity == identity, VaultEntry.field == field
        )
        result = await self.session.execute(stmt)
        entry = result.scalar_one_or_none()

        if entry is None:
            entry = VaultEntry(identity=identity, field=field, value=value)
            self.session.add(entry)
        else:
            entry.value = value

        await self.session.flush()
        return entry

    async def delete_identity(self, identity: str) -> int:
        """Remove every field of an identity. Returns rows deleted."""
        result = await self.session.execute(
            delete(VaultEntry).where(VaultEntry.identity == identity)
        )
        return result.rowcount or 0

    async def list_identities(self, field: Optional[str] = None) -> list[str]:
        """Identity names, optionally only those that have ``field``."""
        stmt = select(VaultEntry.identity).distinct().order_by(VaultEntry.identity)
        if field is not None:
            stmt = stmt.where(VaultEntry.field == field)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
