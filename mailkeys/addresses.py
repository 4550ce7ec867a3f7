"""Mail address normalization.

Resolution keys off addr-specs only. Both "user@example.net" and
"Some Name <User@Example.net>" normalize to "user@example.net".

Only syntax is checked. Addresses that are valid on a private network
(dotless hosts, "localhost", ".local", ".test" and similar reserved
names) are accepted like any other.
"""

from functools import lru_cache

from email_validator import EmailNotValidError, validate_email
from pydantic.networks import pretty_email_regex

from mailkeys.errors import InvalidAddressError

# Reserved top-level names that email-validator rejects even with
# deliverability checks off; "test" is let through by test_environment.
LOCAL_USE_TLDS = frozenset({"arpa", "invalid", "local", "localhost", "onion"})
_STAND_IN_TLD = "test"


def _addr_spec(text: str) -> str:
    """Strip an optional display name and angle brackets."""
    match = pretty_email_regex.fullmatch(text)
    if match:
        _unquoted_name, _quoted_name, addr_spec = match.groups()
        return addr_spec.strip()
    # Unquoted names with dots, e.g. "John Q. Public <jqp@example.net>"
    _name, bracket, rest = text.rpartition("<")
    if bracket and rest.endswith(">"):
        return rest[:-1].strip()
    return text


@lru_cache(maxsize=1024)
def normalize_address(address: str) -> str:
    """Return the lower-cased addr-spec of address.

    Raises:
        InvalidAddressError: If no addr-spec can be extracted
    """
    if not address or not address.strip():
        raise InvalidAddressError(address, "empty address")

    addr_spec = _addr_spec(address.strip())
    local_part, _, domain = addr_spec.rpartition("@")
    head, dot, tld = domain.rpartition(".")
    local_use = tld.lower() in LOCAL_USE_TLDS
    if local_use:
        addr_spec = f"{local_part}@{head}{dot}{_STAND_IN_TLD}"

    try:
        validated = validate_email(
            addr_spec,
            check_deliverability=False,
            globally_deliverable=False,
            test_environment=True,
            allow_quoted_local=True,
        )
    except EmailNotValidError as e:
        raise InvalidAddressError(address, str(e)) from None

    normalized = validated.normalized
    if local_use:
        normalized = normalized[: -len(_STAND_IN_TLD)] + tld
    return normalized.lower()
