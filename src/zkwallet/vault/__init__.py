"""Encrypted at-rest storage for wallet identities."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from zkwallet.crypto import PasswordCipher
from zkwallet.vault.database import create_session_factory, create_vault_engine, init_vault
from zkwallet.vault.models import Base, VaultEntry
from zkwallet.vault.repository import VaultRepository

logger = logging.getLogger(__name__)

SEED_FIELD = "seed"


class EncryptedVault:
    """Password-protected storage keyed by identity name.

    ``get``/``set`` move opaque strings; ``store_secret``/``load_secret``
    encrypt and decrypt under a password. There is no key rotation.

    Usage:
        vault = EncryptedVault(session_factory)
        await vault.store_secret("alice", "seed", mnemonic, "password")
        mnemonic = await vault.load_secret("alice", "seed", "password")
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _repository(self) -> AsyncGenerator[VaultRepository, None]:
        async with self._session_factory() as session:
            try:
                yield VaultRepository(session)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def get(self, identity: str, field: str) -> Optional[str]:
        async with self._repository() as repo:
            return await repo.get(identity, field)

    async def set(self, identity: str, field: str, value: str) -> None:
        async with self._repository() as repo:
            await repo.set(identity, field, value)

    async def store_secret(self, identity: str, field: str, secret: str, password: str) -> str:
        """Encrypt and store a secret. Returns the stored ciphertext."""
        ciphertext = PasswordCipher.encrypt(secret, password)
        await self.set(identity, field, ciphertext)
        logger.info(f"Stored encrypted {field} for identity {identity}")
        return ciphertext

    async def load_secret(self, identity: str, field: str, password: str) -> Optional[str]:
        """Decrypt a stored secret.

        Returns None when nothing is stored or the password does not open it.
        """
        ciphertext = await self.get(identity, field)
        if ciphertext is None:
            return None
        return PasswordCipher.decrypt(ciphertext, password)

    async def exists(self, identity: str, field: str = SEED_FIELD) -> bool:
        return await self.get(identity, field) is not None

    async def list_identities(self) -> list[str]:
        async with self._repository() as repo:
            return await repo.list_identities(SEED_FIELD)

    async def remove(self, identity: str) -> bool:
        async with self._repository() as repo:
            return await repo.delete_identity(identity) > 0


__all__ = [
    "Base",
    "EncryptedVault",
    "SEED_FIELD",
    "VaultEntry",
    "VaultRepository",
    "create_session_factory",
    "create_vault_engine",
    "init_vault",
]
