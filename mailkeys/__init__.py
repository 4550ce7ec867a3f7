"""
mailkeys - Signing and encryption key resolution for mail clients.

Usage:
    from mailkeys import KeyResolverCore, MemoryKeyStore, Protocol

    store = MemoryKeyStore(certificates)
    resolver = KeyResolverCore(store, encrypt=True, sign=True)
    resolver.set_sender("alice@example.net")
    resolver.set_recipients(["bob@example.net", "Carol <carol@example.org>"])

    if resolver.resolve():
        solution = resolver.result.solution
    else:
        # let the user pick keys; see resolver.unresolved_recipients(...)
        ...
"""

from mailkeys.compliance import ComplianceMode, ComplianceOracle, PolicyComplianceOracle
from mailkeys.config import Settings, get_settings
from mailkeys.errors import InvalidAddressError, MailKeysError, ResolverStateError
from mailkeys.keystore import KeyStore, MemoryKeyStore
from mailkeys.models import (
    Certificate,
    KeyResolutionResult,
    Protocol,
    Solution,
    SolutionFlags,
    Subkey,
    UserID,
    Validity,
)
from mailkeys.resolver import KeyResolverCore

__version__ = "0.1.0"
__all__ = [
    "KeyResolverCore",
    "KeyStore",
    "MemoryKeyStore",
    "ComplianceMode",
    "ComplianceOracle",
    "PolicyComplianceOracle",
    "Settings",
    "get_settings",
    "Certificate",
    "KeyResolutionResult",
    "Protocol",
    "Solution",
    "SolutionFlags",
    "Subkey",
    "UserID",
    "Validity",
    "MailKeysError",
    "InvalidAddressError",
    "ResolverStateError",
]
