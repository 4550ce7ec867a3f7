"""
Exception classes for mailkeys.
"""


class MailKeysError(Exception):
    """Base exception for mailkeys errors."""
    pass


class InvalidAddressError(MailKeysError):
    """A mail address could not be reduced to an addr-spec."""

    def __init__(self, address: str, reason: str | None = None):
        message = f"The mail address '{address}' could not be extracted"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.address = address


class ResolverStateError(MailKeysError):
    """A resolver was used outside its resolve-once lifecycle."""
    pass
