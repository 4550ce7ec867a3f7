"""Pytest fixtures for key resolution tests."""

import hashlib
from datetime import datetime, timezone

import pytest

from mailkeys.compliance import ComplianceMode, PolicyComplianceOracle, invalidate_compliance_cache
from mailkeys.config import Settings, get_settings
from mailkeys.keystore import MemoryKeyStore
from mailkeys.models import Certificate, Protocol, Subkey, UserID, Validity
from mailkeys.resolver import KeyResolverCore

OPENPGP = Protocol.OPENPGP
CMS = Protocol.CMS

CREATED = datetime(2021, 3, 1, tzinfo=timezone.utc)


def fingerprint_for(label: str) -> str:
    return hashlib.sha1(label.encode("utf-8")).hexdigest().upper()


def make_cert(
    address: str,
    protocol: Protocol,
    validity: Validity,
    *,
    secret: bool = False,
    label: str | None = None,
    de_vs: bool = True,
    **kwargs,
) -> Certificate:
    """Build a certificate with one user ID and one subkey."""
    fpr = fingerprint_for(label or f"{address}/{protocol.value}")
    kwargs.setdefault("can_encrypt", True)
    kwargs.setdefault("can_sign", secret)
    kwargs.setdefault("created_at", CREATED)
    return Certificate(
        fingerprint=fpr,
        protocol=protocol,
        user_ids=(UserID(email=address, validity=validity),),
        subkeys=(Subkey(key_id=fingerprint_for(f"sub:{fpr}")[-16:], is_de_vs=de_vs),),
        has_secret=secret,
        **kwargs,
    )


# (address, protocol) -> (validity, has secret key)
FIXTURE_KEYS = {
    ("sender-mixed@example.net", OPENPGP): (Validity.ULTIMATE, True),
    ("sender-mixed@example.net", CMS): (Validity.FULL, True),
    ("sender-openpgp@example.net", OPENPGP): (Validity.ULTIMATE, True),
    ("sender-smime@example.net", CMS): (Validity.FULL, True),
    ("prefer-openpgp@example.net", OPENPGP): (Validity.ULTIMATE, False),
    ("prefer-openpgp@example.net", CMS): (Validity.FULL, False),
    ("full-validity@example.net", OPENPGP): (Validity.FULL, False),
    ("full-validity@example.net", CMS): (Validity.FULL, False),
    ("prefer-smime@example.net", OPENPGP): (Validity.MARGINAL, False),
    ("prefer-smime@example.net", CMS): (Validity.FULL, False),
}


@pytest.fixture(autouse=True)
def reset_cached_config():
    """Reset cached settings and compliance oracle between tests."""
    get_settings.cache_clear()
    invalidate_compliance_cache()
    yield
    get_settings.cache_clear()
    invalidate_compliance_cache()


@pytest.fixture
def keys() -> dict[tuple[str, Protocol], Certificate]:
    """The fixture certificates keyed by (address, protocol)."""
    return {
        (address, protocol): make_cert(address, protocol, validity, secret=secret)
        for (address, protocol), (validity, secret) in FIXTURE_KEYS.items()
    }


@pytest.fixture
def store(keys) -> MemoryKeyStore:
    return MemoryKeyStore(keys.values())


@pytest.fixture
def settings() -> Settings:
    """Default settings, independent of the environment."""
    return Settings(
        _env_file=None,
        minimum_validity="marginal",
        allow_mixed_protocols=True,
        preferred_protocol=None,
        compliance_mode="disabled",
    )


@pytest.fixture
def make_resolver(store, settings):
    """Factory for resolvers over the fixture store."""

    def _make(encrypt=True, sign=True, protocol=None, key_store=None, compliance=None):
        return KeyResolverCore(
            key_store if key_store is not None else store,
            encrypt=encrypt,
            sign=sign,
            protocol=protocol,
            compliance=compliance if compliance is not None else PolicyComplianceOracle(ComplianceMode.DISABLED),
            settings=settings,
        )

    return _make


def fingerprints(certs) -> list[str]:
    return [c.fingerprint for c in certs]
