"""Tests for compliance policy checks."""

from conftest import OPENPGP, make_cert
from mailkeys.compliance import (
    ComplianceMode,
    PolicyComplianceOracle,
    get_compliance_oracle,
    invalidate_compliance_cache,
)
from mailkeys.config import get_settings
from mailkeys.models import Certificate, Subkey, Validity


class TestPolicyComplianceOracle:
    """Test the built-in compliance modes."""

    def test_disabled_accepts_everything(self):
        oracle = PolicyComplianceOracle(ComplianceMode.DISABLED)
        assert not oracle.is_active()
        assert oracle.key_is_compliant(make_cert("a@example.net", OPENPGP, Validity.FULL, de_vs=False))

    def test_de_vs_requires_compliant_subkeys(self):
        oracle = PolicyComplianceOracle(ComplianceMode.DE_VS)
        assert oracle.is_active()
        assert oracle.key_is_compliant(make_cert("a@example.net", OPENPGP, Validity.FULL))
        assert not oracle.key_is_compliant(make_cert("a@example.net", OPENPGP, Validity.FULL, de_vs=False))

    def test_de_vs_rejects_partially_compliant_key(self):
        """Every subkey has to be compliant."""
        cert = Certificate(
            fingerprint="C" * 40,
            protocol=OPENPGP,
            subkeys=(Subkey("1111111111111111", True), Subkey("2222222222222222", False)),
        )
        assert not PolicyComplianceOracle(ComplianceMode.DE_VS).key_is_compliant(cert)

    def test_de_vs_rejects_key_without_subkeys(self):
        cert = Certificate(fingerprint="D" * 40, protocol=OPENPGP)
        assert not PolicyComplianceOracle(ComplianceMode.DE_VS).key_is_compliant(cert)


class TestConfiguredOracle:
    """Test the cached oracle built from settings."""

    def test_follows_settings(self, monkeypatch):
        monkeypatch.setenv("MAILKEYS_COMPLIANCE_MODE", "de-vs")
        assert get_compliance_oracle().mode == ComplianceMode.DE_VS

    def test_cached_until_invalidated(self, monkeypatch):
        """Changing the environment needs an explicit cache reset."""
        monkeypatch.setenv("MAILKEYS_COMPLIANCE_MODE", "disabled")
        first = get_compliance_oracle()
        monkeypatch.setenv("MAILKEYS_COMPLIANCE_MODE", "de-vs")
        assert get_compliance_oracle() is first

        get_settings.cache_clear()
        invalidate_compliance_cache()
        assert get_compliance_oracle().mode == ComplianceMode.DE_VS
