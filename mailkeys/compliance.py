"""Compliance policy checks for certificates.

An institution can restrict which keys may be used for signing and
encryption. The resolver only asks two questions: is a policy active,
and does a given certificate satisfy it.

Supported modes:
- disabled: no restriction, every key passes
- de-vs: German VS-NfD approval; a certificate passes only if every
  one of its subkeys is flagged compliant by the crypto backend
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from mailkeys.config import get_settings
from mailkeys.logging import get_logger
from mailkeys.models import Certificate

logger = get_logger(__name__)


class ComplianceMode(str, Enum):
    """Compliance enforcement modes."""

    DISABLED = "disabled"
    DE_VS = "de-vs"


class ComplianceOracle(ABC):
    """Answers whether keys meet an institutional policy."""

    @abstractmethod
    def is_active(self) -> bool:
        ...

    @abstractmethod
    def key_is_compliant(self, certificate: Certificate) -> bool:
        ...


@dataclass(frozen=True)
class PolicyComplianceOracle(ComplianceOracle):
    """Compliance oracle for one of the built-in modes."""

    mode: ComplianceMode = ComplianceMode.DISABLED

    def is_active(self) -> bool:
        return self.mode != ComplianceMode.DISABLED

    def key_is_compliant(self, certificate: Certificate) -> bool:
        if self.mode == ComplianceMode.DISABLED:
            return True
        return bool(certificate.subkeys) and all(sk.is_de_vs for sk in certificate.subkeys)


@lru_cache(maxsize=1)
def get_compliance_oracle() -> PolicyComplianceOracle:
    """Get the oracle for the configured compliance mode.

    This function is cached - call invalidate_compliance_cache() to refresh.
    """
    mode = ComplianceMode(get_settings().compliance_mode)
    if mode != ComplianceMode.DISABLED:
        logger.info("Compliance mode is active", mode=mode.value)
    return PolicyComplianceOracle(mode)


def invalidate_compliance_cache() -> None:
    """Invalidate the cached compliance oracle."""
    get_compliance_oracle.cache_clear()
