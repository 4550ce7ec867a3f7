"""Key Resolution Engine.

Decides which keys sign and encrypt one message. The sender needs a
signing key and every recipient needs encryption keys, in OpenPGP,
S/MIME, or a per-recipient mix of both.

Resolution runs in three phases over a working set owned by one
resolver instance:
- Overrides: caller-supplied keys pre-empt the automatic search
- Per-protocol search: best signing / encryption keys from the key store
- Reconciliation: commit to one protocol, a mix, or report that the
  caller has to let the user choose

Usage:
    resolver = KeyResolverCore(store, encrypt=True, sign=True)
    resolver.set_sender("Alice <alice@example.net>")
    resolver.set_recipients(["bob@example.net"])
    if resolver.resolve():
        keys = resolver.result.solution
"""

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence

from mailkeys.addresses import normalize_address
from mailkeys.compliance import (
    ComplianceMode,
    ComplianceOracle,
    PolicyComplianceOracle,
    get_compliance_oracle,
)
from mailkeys.config import Settings, get_settings
from mailkeys.errors import InvalidAddressError, ResolverStateError
from mailkeys.keystore import KeyStore
from mailkeys.logging import get_logger, log_operation, resolution_context
from mailkeys.models import (
    Certificate,
    KeyResolutionResult,
    Protocol,
    Solution,
    SolutionFlags,
    Validity,
    minimum_validity,
    protocol_flag,
)

logger = get_logger(__name__)

# Search order; also the tie-break default
PROTOCOLS = (Protocol.OPENPGP, Protocol.CMS)


def _other(protocol: Protocol) -> Protocol:
    return Protocol.CMS if protocol is Protocol.OPENPGP else Protocol.OPENPGP


@dataclass
class _RecipientKeys:
    """Working slots for one recipient.

    common holds keys from protocol-agnostic overrides and wins over
    both protocol slots.
    """

    common: list[Certificate] = field(default_factory=list)
    slots: dict[Protocol, list[Certificate]] = field(
        default_factory=lambda: {p: [] for p in PROTOCOLS}
    )


class KeyResolverCore:
    """Resolves signing and encryption keys for one message.

    Configure with the setters, call resolve() exactly once, then read
    the outcome from result or the accessors.
    """

    def __init__(
        self,
        key_store: KeyStore,
        encrypt: bool,
        sign: bool,
        protocol: Optional[Protocol] = None,
        compliance: Optional[ComplianceOracle] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Args:
            key_store: Source of certificates, only ever read
            encrypt: Whether encryption keys are needed
            sign: Whether a signing key is needed
            protocol: Restrict resolution to one protocol (None = both)
            compliance: Policy oracle (defaults to the configured mode)
            settings: Defaults for the setters (defaults to get_settings())
        """
        if compliance is None:
            compliance = (
                get_compliance_oracle()
                if settings is None
                else PolicyComplianceOracle(ComplianceMode(settings.compliance_mode))
            )
        settings = settings or get_settings()
        self._store = key_store
        self._encrypt = encrypt
        self._sign = sign
        self._format = protocol
        self._compliance = compliance

        self._allow_mixed = settings.allow_mixed_protocols
        self._preferred: Optional[Protocol] = settings.preferred_protocol
        self._minimum_validity = settings.minimum_validity_level

        self._sender: Optional[str] = None
        self._recipients: list[str] = []
        self._sig_keys: dict[Protocol, list[Certificate]] = {}
        self._enc_keys: dict[str, _RecipientKeys] = {}
        self._overrides: dict[str, dict[Optional[Protocol], list[str]]] = {}
        self._fatal_errors: list[str] = []
        self._result: Optional[KeyResolutionResult] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _check_not_resolved(self) -> None:
        if self._result is not None:
            raise ResolverStateError("resolve() has already been called on this resolver")

    def set_sender(self, address: str) -> None:
        """Set the sender; also an encryption recipient when encrypting."""
        self._check_not_resolved()
        try:
            normalized = normalize_address(address)
        except InvalidAddressError:
            self._fatal_errors.append(f"The sender address '{address}' could not be extracted")
            return
        if self._sign:
            self._sender = normalized
        self.set_recipients([address])

    def set_recipients(self, addresses: Iterable[str]) -> None:
        """Add encryption recipients. Ignored unless encrypting."""
        self._check_not_resolved()
        if not self._encrypt:
            return
        for address in addresses:
            try:
                normalized = normalize_address(address)
            except InvalidAddressError:
                self._fatal_errors.append(f"The mail address for '{address}' could not be extracted")
                continue
            if normalized not in self._enc_keys:
                self._recipients.append(normalized)
                self._enc_keys[normalized] = _RecipientKeys()

    def set_signing_keys(self, fingerprints: Iterable[str]) -> None:
        """Use these signing keys instead of searching, per their protocol."""
        self._check_not_resolved()
        if not self._sign:
            return
        for fpr in fingerprints:
            cert = self._store.find_by_key_id_or_fingerprint(fpr)
            if cert is None:
                logger.debug("Failed to find signing key", fingerprint=fpr)
                continue
            self._sig_keys.setdefault(cert.protocol, []).append(cert)

    def set_override_keys(
        self,
        overrides: Mapping[Optional[Protocol], Mapping[str, Sequence[str]]],
    ) -> None:
        """Force keys for addresses.

        Args:
            overrides: protocol -> address -> fingerprints or key ids.
                The None bucket holds common overrides usable with any
                protocol; they win over everything else for the address.
        """
        self._check_not_resolved()
        for protocol, address_map in overrides.items():
            for address, tokens in address_map.items():
                try:
                    normalized = normalize_address(address)
                except InvalidAddressError:
                    self._fatal_errors.append(f"The override address '{address}' could not be extracted")
                    continue
                self._overrides.setdefault(normalized, {})[protocol] = list(tokens)

    def set_allow_mixed_protocols(self, allow_mixed: bool) -> None:
        self._check_not_resolved()
        self._allow_mixed = allow_mixed

    def set_preferred_protocol(self, protocol: Optional[Protocol]) -> None:
        self._check_not_resolved()
        self._preferred = protocol

    def set_minimum_validity(self, validity: "Validity | str | int") -> None:
        self._check_not_resolved()
        self._minimum_validity = Validity.parse(validity)

    # ------------------------------------------------------------------
    # Acceptability
    # ------------------------------------------------------------------

    def is_acceptable_signing_key(self, cert: Certificate) -> bool:
        if cert.is_bad or not cert.can_sign or not cert.has_secret:
            return False
        if self._compliance.is_active() and not self._compliance.key_is_compliant(cert):
            logger.debug("Rejected signing key, not compliant", fingerprint=cert.fingerprint)
            return False
        return True

    def is_acceptable_encryption_key(self, cert: Certificate, address: Optional[str] = None) -> bool:
        """Usable for encryption and, for an address, valid enough for it."""
        if cert.is_bad or not cert.can_encrypt:
            return False
        if self._compliance.is_active() and not self._compliance.key_is_compliant(cert):
            logger.debug("Rejected encryption key, not compliant", fingerprint=cert.fingerprint)
            return False
        if not address:
            return True
        return any(
            uid.addr_spec == address and uid.validity >= self._minimum_validity
            for uid in cert.user_ids
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _resolve_overrides(self) -> None:
        for address, protocol_map in self._overrides.items():
            if address not in self._enc_keys:
                logger.debug("Override for an address that is neither sender nor recipient", address=address)
                continue
            recipient = self._enc_keys[address]
            for protocol, tokens in protocol_map.items():
                if protocol is not None and self._format is not None and protocol is not self._format:
                    logger.debug(
                        f"Skipping {protocol.display_name} override for a {self._format.display_name} run",
                        address=address,
                    )
                    continue
                for token in tokens:
                    cert = self._store.find_by_key_id_or_fingerprint(token)
                    if cert is None:
                        logger.debug("Failed to find override key", address=address, fingerprint=token)
                        continue
                    if protocol is None:
                        recipient.common.append(cert)
                    else:
                        recipient.slots[protocol].append(cert)
                    logger.debug(
                        "Override",
                        address=address,
                        protocol=protocol.display_name if protocol else "any",
                        fingerprint=cert.fingerprint,
                    )

    def _common_override_conflict(self) -> Optional[str]:
        common = [c for r in self._enc_keys.values() for c in r.common]
        needs_openpgp = any(c.protocol is Protocol.OPENPGP for c in common)
        needs_cms = any(c.protocol is Protocol.CMS for c in common)
        if self._format is Protocol.OPENPGP and needs_cms:
            return "OpenPGP was requested but overrides require S/MIME"
        if self._format is Protocol.CMS and needs_openpgp:
            return "S/MIME was requested but overrides require OpenPGP"
        if not self._allow_mixed and needs_openpgp and needs_cms:
            return "Overrides require mixed protocols but mixing is not allowed"
        return None

    def _resolve_sign(self, protocol: Protocol) -> None:
        if protocol in self._sig_keys:
            # explicitly set
            return
        if self._sender is None:
            return
        keys = self._store.find_best_by_mailbox(self._sender, protocol, True, False)
        for cert in keys:
            if not self.is_acceptable_signing_key(cert):
                logger.debug("Unacceptable signing key", fingerprint=cert.fingerprint, address=self._sender)
                return
        if keys:
            self._sig_keys[protocol] = list(keys)

    def _resolve_recipient(self, address: str, protocol: Protocol) -> list[Certificate]:
        keys = self._store.find_best_by_mailbox(address, protocol, False, True)
        if not keys:
            logger.debug(f"No {protocol.display_name} key found", address=address)
            return []
        if len(keys) == 1:
            if not self.is_acceptable_encryption_key(keys[0], address):
                logger.debug("Key has not enough validity", address=address, fingerprint=keys[0].fingerprint)
                return []
        # One unacceptable key rejects the whole group
        elif not all(self.is_acceptable_encryption_key(k) for k in keys):
            logger.debug(f"{protocol.display_name} group has an unacceptable key", address=address)
            return []
        for cert in keys:
            logger.debug("Resolved encryption key", address=address, fingerprint=cert.fingerprint)
        return list(keys)

    def _resolve_enc(self, protocol: Protocol) -> None:
        for address in self._recipients:
            recipient = self._enc_keys[address]
            if recipient.common:
                if all(c.protocol is protocol for c in recipient.common):
                    recipient.slots[protocol] = list(recipient.common)
                else:
                    recipient.slots[protocol] = []
                continue
            if recipient.slots[protocol]:
                continue
            recipient.slots[protocol] = self._resolve_recipient(address, protocol)

    def _is_viable(self, protocol: Protocol) -> bool:
        if self._sign and protocol not in self._sig_keys:
            return False
        return all(self._enc_keys[a].slots[protocol] for a in self._recipients)

    def _merge_encryption_keys(self) -> dict[str, tuple[Certificate, ...]]:
        merged: dict[str, tuple[Certificate, ...]] = {}
        for address in self._recipients:
            recipient = self._enc_keys[address]
            if recipient.common:
                merged[address] = tuple(recipient.common)
                continue
            openpgp = recipient.slots[Protocol.OPENPGP]
            cms = recipient.slots[Protocol.CMS]
            if not cms:
                merged[address] = tuple(openpgp)
            elif not openpgp:
                merged[address] = tuple(cms)
            else:
                validity_openpgp = minimum_validity(openpgp, address)
                validity_cms = minimum_validity(cms, address)
                if validity_cms > validity_openpgp or (
                    validity_cms == validity_openpgp and self._preferred is Protocol.CMS
                ):
                    merged[address] = tuple(cms)
                else:
                    merged[address] = tuple(openpgp)
        return merged

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _solution_for(self, protocol: Protocol) -> Solution:
        return Solution(
            protocol=protocol,
            signing_keys=tuple(self._sig_keys.get(protocol, ())),
            encryption_keys={a: tuple(self._enc_keys[a].slots[protocol]) for a in self._recipients},
        )

    def _build_result(
        self,
        flags: SolutionFlags,
        solution: Solution,
        alternative: Optional[Solution] = None,
        committed: Sequence[Protocol] = (),
        merged: Optional[dict[str, tuple[Certificate, ...]]] = None,
    ) -> KeyResolutionResult:
        return KeyResolutionResult(
            flags=flags,
            solution=solution,
            alternative=alternative or Solution(),
            signing_keys={p: tuple(self._sig_keys[p]) for p in committed if self._sig_keys.get(p)},
            encryption_keys={
                p: {a: tuple(self._enc_keys[a].slots[p]) for a in self._recipients}
                for p in committed
            },
            merged_encryption_keys=merged or {},
        )

    def _reconcile(self, viable: dict[Protocol, bool]) -> KeyResolutionResult:
        merged = self._merge_encryption_keys() if self._allow_mixed else {}

        if any(viable.values()):
            if viable[Protocol.CMS] and (not viable[Protocol.OPENPGP] or self._preferred is Protocol.CMS):
                chosen = Protocol.CMS
            else:
                chosen = Protocol.OPENPGP
            other = _other(chosen)
            keep_other = self._allow_mixed and viable[other]
            if not keep_other:
                logger.debug(f"Dropping superfluous {other.display_name} keys")
            return self._build_result(
                SolutionFlags.ALL_RESOLVED | protocol_flag(chosen),
                self._solution_for(chosen),
                self._solution_for(other),
                committed=PROTOCOLS if keep_other else (chosen,),
                merged=merged if keep_other else None,
            )

        if not self._allow_mixed:
            chosen = Protocol.CMS if self._preferred is Protocol.CMS else Protocol.OPENPGP
            return self._build_result(
                SolutionFlags.SOME_UNRESOLVED | protocol_flag(chosen),
                self._solution_for(chosen),
                self._solution_for(_other(chosen)),
                committed=PROTOCOLS,
            )

        mixed_signing = tuple(self._sig_keys.get(Protocol.OPENPGP, ())) + tuple(self._sig_keys.get(Protocol.CMS, ()))
        all_covered = all(merged.values()) and (
            not self._sign or all(p in self._sig_keys for p in PROTOCOLS)
        )
        if all_covered:
            return self._build_result(
                SolutionFlags.ALL_RESOLVED | SolutionFlags.MIXED_PROTOCOLS,
                Solution(None, mixed_signing, merged),
                committed=PROTOCOLS,
                merged=merged,
            )

        merged_certs = [c for keys in merged.values() for c in keys]
        for protocol in PROTOCOLS:
            if all(c.protocol is protocol for c in merged_certs):
                return self._build_result(
                    SolutionFlags.SOME_UNRESOLVED | protocol_flag(protocol),
                    Solution(protocol, tuple(self._sig_keys.get(protocol, ())), merged),
                    committed=PROTOCOLS,
                    merged=merged,
                )
        return self._build_result(
            SolutionFlags.SOME_UNRESOLVED | SolutionFlags.MIXED_PROTOCOLS,
            Solution(None, mixed_signing, merged),
            committed=PROTOCOLS,
            merged=merged,
        )

    def _run(self) -> KeyResolutionResult:
        if not self._sign and not self._encrypt:
            return KeyResolutionResult(flags=SolutionFlags.ALL_RESOLVED)

        if self._fatal_errors:
            logger.warning("Aborting key resolution", errors=list(self._fatal_errors))
            return KeyResolutionResult(
                flags=SolutionFlags.ERROR,
                fatal_errors=tuple(self._fatal_errors),
            )

        if self._encrypt:
            self._resolve_overrides()
            conflict = self._common_override_conflict()
            if conflict:
                logger.warning("Cannot honor override keys", reason=conflict)
                return KeyResolutionResult(flags=SolutionFlags.ERROR)

        protocols = [p for p in PROTOCOLS if self._format in (None, p)]
        if self._sign:
            for protocol in protocols:
                self._resolve_sign(protocol)
        if self._encrypt:
            for protocol in protocols:
                self._resolve_enc(protocol)

        viable = {p: self._is_viable(p) for p in protocols}

        if self._format is not None:
            resolved = SolutionFlags.ALL_RESOLVED if viable[self._format] else SolutionFlags.SOME_UNRESOLVED
            return self._build_result(
                resolved | protocol_flag(self._format),
                self._solution_for(self._format),
                committed=(self._format,),
            )

        return self._reconcile(viable)

    @log_operation("key resolution")
    def resolve(self) -> bool:
        """Run the resolution.

        Returns:
            True if every needed key was found without user interaction,
            False if the caller has to mediate (see result.flags) or the
            input had fatal errors (see fatal_errors).

        Raises:
            ResolverStateError: If called more than once
        """
        self._check_not_resolved()
        with resolution_context():
            logger.debug(
                "Starting key resolution",
                encrypt=self._encrypt,
                sign=self._sign,
                protocol=self._format.value if self._format else "any",
                recipients=len(self._recipients),
            )
            self._result = self._run()
            logger.info(
                "Key resolution finished",
                resolved=self._result.is_resolved,
                flags=int(self._result.flags),
            )
        return self._result.is_resolved

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def normalized_sender(self) -> Optional[str]:
        return self._sender

    @property
    def fatal_errors(self) -> tuple[str, ...]:
        return tuple(self._fatal_errors)

    @property
    def result(self) -> KeyResolutionResult:
        if self._result is None:
            raise ResolverStateError("resolve() has not been called yet")
        return self._result

    def signing_keys(self) -> dict[Protocol, tuple[Certificate, ...]]:
        return dict(self.result.signing_keys)

    def encryption_keys(self) -> dict[Protocol, dict[str, tuple[Certificate, ...]]]:
        return {p: dict(keys) for p, keys in self.result.encryption_keys.items()}

    def merged_encryption_keys(self) -> dict[str, tuple[Certificate, ...]]:
        return dict(self.result.merged_encryption_keys)

    def unresolved_recipients(self, protocol: Protocol) -> list[str]:
        """Recipients without encryption keys in protocol after resolution."""
        keys = self.result.encryption_keys.get(protocol, {})
        return [a for a in self._recipients if not keys.get(a)]
