"""Tests for the in-memory key store."""

from datetime import datetime, timezone

from conftest import CMS, OPENPGP, make_cert
from mailkeys.keystore import MemoryKeyStore
from mailkeys.models import Validity


class TestLookupByToken:
    """Test exact lookup by fingerprint and key ids."""

    def test_fingerprint(self, store, keys):
        """Full fingerprint finds the certificate."""
        cert = keys[("full-validity@example.net", OPENPGP)]
        assert store.find_by_key_id_or_fingerprint(cert.fingerprint) is cert

    def test_lowercase_fingerprint_with_prefix(self, store, keys):
        """Case and 0x prefix are ignored."""
        cert = keys[("full-validity@example.net", CMS)]
        assert store.find_by_key_id_or_fingerprint("0x" + cert.fingerprint.lower()) is cert

    def test_long_and_short_key_id(self, store, keys):
        cert = keys[("prefer-openpgp@example.net", OPENPGP)]
        assert store.find_by_key_id_or_fingerprint(cert.key_id) is cert
        assert store.find_by_key_id_or_fingerprint(cert.short_key_id) is cert

    def test_subkey_id(self, store, keys):
        cert = keys[("prefer-smime@example.net", OPENPGP)]
        assert store.find_by_key_id_or_fingerprint(cert.subkeys[0].key_id) is cert

    def test_miss(self, store):
        assert store.find_by_key_id_or_fingerprint("DEADBEEFDEADBEEF") is None
        assert store.find_by_key_id_or_fingerprint("  ") is None


class TestBestByMailbox:
    """Test best-match selection for an address."""

    def test_protocol_is_respected(self, store, keys):
        """Only certificates of the requested protocol are returned."""
        found = store.find_best_by_mailbox("prefer-openpgp@example.net", CMS, False, True)
        assert found == [keys[("prefer-openpgp@example.net", CMS)]]

    def test_address_is_normalized(self, store, keys):
        found = store.find_best_by_mailbox("Someone <Prefer-OpenPGP@Example.NET>", OPENPGP, False, True)
        assert found == [keys[("prefer-openpgp@example.net", OPENPGP)]]

    def test_signing_needs_secret_key(self, store):
        """Public-only certificates are not offered for signing."""
        assert store.find_best_by_mailbox("full-validity@example.net", OPENPGP, True, False) == []

    def test_bad_certificates_are_skipped(self):
        store = MemoryKeyStore([make_cert("a@example.net", OPENPGP, Validity.FULL, revoked=True)])
        assert store.find_best_by_mailbox("a@example.net", OPENPGP, False, True) == []

    def test_highest_validity_wins(self):
        weak = make_cert("a@example.net", OPENPGP, Validity.MARGINAL, label="weak")
        strong = make_cert("a@example.net", OPENPGP, Validity.FULL, label="strong")
        store = MemoryKeyStore([weak, strong])
        assert store.find_best_by_mailbox("a@example.net", OPENPGP, False, True) == [strong]

    def test_newest_wins_on_equal_validity(self):
        old = make_cert("a@example.net", OPENPGP, Validity.FULL, label="old")
        new = make_cert(
            "a@example.net", OPENPGP, Validity.FULL, label="new",
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        store = MemoryKeyStore([old, new])
        assert store.find_best_by_mailbox("a@example.net", OPENPGP, False, True) == [new]

    def test_invalid_address_finds_nothing(self, store):
        assert store.find_best_by_mailbox("not an address", OPENPGP, False, True) == []

    def test_group_is_returned_whole(self, store):
        """A registered group wins over single certificates."""
        members = [
            make_cert("list@example.net", CMS, Validity.FULL, label="m1"),
            make_cert("list@example.net", CMS, Validity.FULL, label="m2"),
        ]
        store.add_group("List <list@example.net>", CMS, members)
        assert store.find_best_by_mailbox("list@example.net", CMS, False, True) == members
        assert store.find_best_by_mailbox("list@example.net", OPENPGP, False, True) == []

    def test_len_counts_group_members(self, store, keys):
        store.add_group("list@example.net", CMS, [make_cert("list@example.net", CMS, Validity.FULL)])
        assert len(store) == len(keys) + 1
