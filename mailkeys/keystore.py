"""
Key store query surface used by the resolver.

The resolver only reads from a key store. MemoryKeyStore is a
thread-safe, already-populated store suitable for embedding and tests;
populating it from a real certificate backend is the caller's job.
"""

import threading
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from mailkeys.addresses import normalize_address
from mailkeys.errors import InvalidAddressError
from mailkeys.logging import get_logger
from mailkeys.models import Certificate, Protocol

logger = get_logger(__name__)


class KeyStore(ABC):
    """Read-only certificate lookup."""

    @abstractmethod
    def find_best_by_mailbox(
        self,
        address: str,
        protocol: Protocol,
        need_sign: bool,
        need_encrypt: bool,
    ) -> list[Certificate]:
        """Best certificate(s) for address in protocol.

        Several certificates form a group to be used together.
        """

    @abstractmethod
    def find_by_key_id_or_fingerprint(self, token: str) -> Optional[Certificate]:
        """Exact lookup by fingerprint or key id, None on a miss."""


def _normalize_token(token: str) -> str:
    token = token.strip().upper()
    if token.startswith("0X"):
        token = token[2:]
    return token


class MemoryKeyStore(KeyStore):
    """
    In-memory key store.

    Features:
    - Lookup by fingerprint, long or short key id, or subkey id
    - Best-match selection by user ID validity, newest key on ties
    - Explicit key groups per (address, protocol), returned whole
    - Thread-safe for concurrent readers
    """

    def __init__(self, certificates: Iterable[Certificate] = ()):
        self._certificates: dict[str, Certificate] = {}
        self._groups: dict[tuple[str, Protocol], tuple[Certificate, ...]] = {}
        self._lock = threading.RLock()
        self.add(*certificates)

    def add(self, *certificates: Certificate) -> None:
        with self._lock:
            for cert in certificates:
                self._certificates[cert.fingerprint.upper()] = cert

    def add_group(self, address: str, protocol: Protocol, certificates: Iterable[Certificate]) -> None:
        """Register certificates that must be used together for address."""
        certificates = tuple(certificates)
        with self._lock:
            self.add(*certificates)
            self._groups[(normalize_address(address), protocol)] = certificates

    def __len__(self) -> int:
        with self._lock:
            return len(self._certificates)

    def find_by_key_id_or_fingerprint(self, token: str) -> Optional[Certificate]:
        token = _normalize_token(token)
        if not token:
            return None
        with self._lock:
            if token in self._certificates:
                return self._certificates[token]
            for cert in self._certificates.values():
                if token in (cert.key_id, cert.short_key_id):
                    return cert
                if any(sk.key_id.upper() == token for sk in cert.subkeys):
                    return cert
        return None

    def find_best_by_mailbox(
        self,
        address: str,
        protocol: Protocol,
        need_sign: bool,
        need_encrypt: bool,
    ) -> list[Certificate]:
        try:
            address = normalize_address(address)
        except InvalidAddressError:
            return []

        with self._lock:
            group = self._groups.get((address, protocol))
            if group:
                return list(group)

            best: Optional[Certificate] = None
            for cert in self._certificates.values():
                if cert.protocol != protocol or cert.is_bad:
                    continue
                if need_encrypt and not cert.can_encrypt:
                    continue
                if need_sign and not (cert.can_sign and cert.has_secret):
                    continue
                uid = cert.user_id_for(address)
                if uid is None:
                    continue
                if best is None or (uid.validity, cert.created_at) > (
                    best.validity_for(address),
                    best.created_at,
                ):
                    best = cert

        if best is None:
            logger.debug("No matching certificate", address=address, protocol=protocol.value)
            return []
        return [best]
