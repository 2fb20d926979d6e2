"""Credential validation for hub connections."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable
from typing import Protocol

from token_alert_hub.hub.models import Identity

logger = logging.getLogger(__name__)


def hash_key(raw_key: str) -> str:
    """Hex sha256 digest of an API key."""
    return hashlib.sha256(raw_key.encode()).hexdigest()


class CredentialValidator(Protocol):
    """Maps a client token to an identity, or None if it is not valid."""

    async def validate(self, token: str) -> Identity | None: ...


class StaticCredentialValidator:
    """Validates tokens against a fixed set of API keys.

    Only sha256 digests of the keys are kept in memory.
    """

    def __init__(self, keys: Iterable[tuple[str, str]] = ()) -> None:
        """Initialize the validator.

        Args:
            keys: (name, raw key) pairs.
        """
        self._identities: dict[str, Identity] = {}
        for name, raw_key in keys:
            self.add_key(name, raw_key)

    def __len__(self) -> int:
        return len(self._identities)

    def add_key(self, name: str, raw_key: str) -> Identity:
        digest = hash_key(raw_key)
        identity = Identity(id=digest[:16], name=name)
        self._identities[digest] = identity
        return identity

    @classmethod
    def from_setting(cls, value: str) -> StaticCredentialValidator:
        """Parse a ``name:key,name2:key2`` setting.

        Entries without a name get ``client-N``. Blank entries are ignored.
        """
        pairs = []
        for index, entry in enumerate(part.strip() for part in value.split(",")):
            if not entry:
                continue
            name, sep, key = entry.partition(":")
            if not sep:
                name, key = f"client-{index + 1}", entry
            pairs.append((name.strip(), key.strip()))
        validator = cls(pairs)
        logger.info("Loaded %d hub API keys", len(validator))
        return validator

    async def validate(self, token: str) -> Identity | None:
        if not token:
            return None
        return self._identities.get(hash_key(token))
