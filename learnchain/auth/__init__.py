"""Identity module exports."""

from learnchain.auth.dependencies import (
    USER_ID_HEADER,
    WALLET_HEADER,
    CurrentIdentity,
    Identity,
    IdentityMissingError,
)


__all__ = [
    "USER_ID_HEADER",
    "WALLET_HEADER",
    "CurrentIdentity",
    "Identity",
    "IdentityMissingError",
]
