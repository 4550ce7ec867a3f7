"""Domain models for mail key resolution.

Certificates are owned by the key store and never modified by the
resolver. Results are frozen so a finished resolution can be handed to
UI code without copying.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum, IntFlag
from typing import Any, Optional, Sequence

from mailkeys.addresses import normalize_address
from mailkeys.errors import InvalidAddressError


class Protocol(str, Enum):
    """Certificate ecosystems a message can be protected with."""

    OPENPGP = "openpgp"
    CMS = "cms"  # S/MIME, X.509

    @property
    def display_name(self) -> str:
        return "OpenPGP" if self is Protocol.OPENPGP else "S/MIME"


class Validity(IntEnum):
    """Validity of a user ID binding, ordered from weakest to strongest."""

    UNKNOWN = 0
    UNDEFINED = 1
    NEVER = 2
    MARGINAL = 3
    FULL = 4
    ULTIMATE = 5

    @classmethod
    def parse(cls, value: "Validity | str | int") -> "Validity":
        """Accept a Validity, its name (any case) or its integer level."""
        if isinstance(value, Validity):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown validity level: {value!r}") from None


class SolutionFlags(IntFlag):
    """Outcome classification of a resolution run."""

    ALL_RESOLVED = 0
    SOME_UNRESOLVED = 1
    RESOLVED_MASK = 1

    OPENPGP_ONLY = 2
    CMS_ONLY = 4
    MIXED_PROTOCOLS = 6
    PROTOCOLS_MASK = 6

    ERROR = 8


def protocol_flag(protocol: Protocol) -> SolutionFlags:
    return SolutionFlags.OPENPGP_ONLY if protocol is Protocol.OPENPGP else SolutionFlags.CMS_ONLY


@dataclass(frozen=True)
class UserID:
    """A (name, email, validity) binding on a certificate."""

    email: str
    validity: Validity = Validity.UNKNOWN
    name: str = ""

    @property
    def addr_spec(self) -> str:
        """Normalized address of this user ID, or "" if it does not parse."""
        try:
            return normalize_address(self.email)
        except InvalidAddressError:
            return ""


@dataclass(frozen=True)
class Subkey:
    """A subkey as reported by the crypto backend."""

    key_id: str
    is_de_vs: bool = False


@dataclass(frozen=True)
class Certificate:
    """An OpenPGP key or X.509 certificate."""

    fingerprint: str
    protocol: Protocol
    user_ids: tuple[UserID, ...] = ()
    subkeys: tuple[Subkey, ...] = ()
    can_sign: bool = False
    can_encrypt: bool = False
    has_secret: bool = False
    revoked: bool = False
    expired: bool = False
    disabled: bool = False
    created_at: datetime = field(
        default_factory=lambda: datetime(1970, 1, 1, tzinfo=timezone.utc),
        compare=False,
    )

    @property
    def key_id(self) -> str:
        return self.fingerprint[-16:].upper()

    @property
    def short_key_id(self) -> str:
        return self.fingerprint[-8:].upper()

    @property
    def is_bad(self) -> bool:
        return self.revoked or self.expired or self.disabled

    def user_id_for(self, address: str) -> Optional[UserID]:
        for uid in self.user_ids:
            if uid.addr_spec and uid.addr_spec == address.lower():
                return uid
        return None

    def validity_for(self, address: str) -> Validity:
        """Validity of the user ID matching address.

        Falls back to the highest validity of all user IDs when none
        matches, and to UNKNOWN for a certificate without user IDs.
        """
        uid = self.user_id_for(address)
        if uid is not None:
            return uid.validity
        return max((u.validity for u in self.user_ids), default=Validity.UNKNOWN)

    def __repr__(self) -> str:
        return f"<Certificate {self.protocol.value} {self.fingerprint}>"


def minimum_validity(certificates: Sequence[Certificate], address: str) -> Validity:
    """Weakest validity across a key group for address (UNKNOWN if empty)."""
    return min((c.validity_for(address) for c in certificates), default=Validity.UNKNOWN)


@dataclass(frozen=True)
class Solution:
    """A set of keys to sign and encrypt one message with.

    protocol is None for a mixed solution and for an empty alternative.
    """

    protocol: Optional[Protocol] = None
    signing_keys: tuple[Certificate, ...] = ()
    encryption_keys: dict[str, tuple[Certificate, ...]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol.value if self.protocol else None,
            "signing_keys": [c.fingerprint for c in self.signing_keys],
            "encryption_keys": {
                address: [c.fingerprint for c in keys]
                for address, keys in self.encryption_keys.items()
            },
        }


@dataclass(frozen=True)
class KeyResolutionResult:
    """Final, immutable outcome of KeyResolverCore.resolve()."""

    flags: SolutionFlags
    solution: Solution = field(default_factory=Solution)
    alternative: Solution = field(default_factory=Solution)
    signing_keys: dict[Protocol, tuple[Certificate, ...]] = field(default_factory=dict)
    encryption_keys: dict[Protocol, dict[str, tuple[Certificate, ...]]] = field(default_factory=dict)
    merged_encryption_keys: dict[str, tuple[Certificate, ...]] = field(default_factory=dict)
    fatal_errors: tuple[str, ...] = ()

    @property
    def is_resolved(self) -> bool:
        return not self.flags & (SolutionFlags.SOME_UNRESOLVED | SolutionFlags.ERROR)

    @property
    def needs_user_choice(self) -> bool:
        return not self.is_resolved and not self.fatal_errors

    @property
    def protocols(self) -> SolutionFlags:
        return self.flags & SolutionFlags.PROTOCOLS_MASK

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging and API responses."""
        return {
            "resolved": self.is_resolved,
            "flags": int(self.flags),
            "solution": self.solution.to_dict(),
            "alternative": self.alternative.to_dict(),
            "fatal_errors": list(self.fatal_errors),
        }
