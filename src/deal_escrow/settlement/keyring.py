"""Sealed storage for ledger account seeds.

Deal and user rows only ever hold Fernet tokens. Backends call ``unseal``
right before signing and never hand the clear seed back to callers.
"""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from deal_escrow.domain.exceptions import MissingConfigurationError, SettlementError


class SeedKeyring:
    """Seals and unseals ledger seeds with a symmetric Fernet key."""

    def __init__(self, key: str | bytes) -> None:
        if not key:
            raise MissingConfigurationError("SEED_ENCRYPTION_KEY")
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def seal(self, seed: str) -> str:
        return self._fernet.encrypt(seed.encode()).decode()

    def unseal(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise SettlementError("Sealed ledger seed could not be opened") from exc
