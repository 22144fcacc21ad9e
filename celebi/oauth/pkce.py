"""PKCE (Proof Key for Code Exchange) primitives per RFC 7636.

Instances advertise PKCE support in their authorization server metadata.
When they do, the authorization request carries an S256 challenge and the
token request carries the matching verifier.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass


# Bytes of randomness in a verifier; hex encoding doubles the length (56 chars)
VERIFIER_BYTES = 28

CHALLENGE_METHOD = "S256"


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and the challenge derived from it.

    The verifier stays on the client (in the ephemeral store) until the
    token exchange. Only the challenge is sent with the authorization request.
    """

    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD


def generate_code_verifier() -> str:
    """Generate a cryptographically random code verifier.

    Uses the OS CSPRNG through :mod:`secrets`. There is no fallback source:
    if the OS cannot provide randomness the error propagates.

    Returns:
        56-character lowercase hex string (28 random bytes)
    """
    return secrets.token_hex(VERIFIER_BYTES)


def generate_code_challenge(verifier: str) -> str:
    """Derive the S256 code challenge from a verifier.

    code_challenge = BASE64URL(SHA256(UTF-8(code_verifier))), padding stripped.

    Args:
        verifier: The code verifier string

    Returns:
        Base64URL-encoded SHA256 digest of the verifier
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_pkce_challenge() -> PKCEChallenge:
    """Generate a fresh verifier together with its S256 challenge."""
    verifier = generate_code_verifier()
    return PKCEChallenge(verifier=verifier, challenge=generate_code_challenge(verifier))
