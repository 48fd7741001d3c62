"""
Credential rotation pool.
"""

from .pool import (
    Credential,
    CredentialPool,
    ReleaseOutcome,
    RotationPolicy,
    parse_token_lines,
)

__all__ = [
    "Credential",
    "CredentialPool",
    "ReleaseOutcome",
    "RotationPolicy",
    "parse_token_lines",
]
