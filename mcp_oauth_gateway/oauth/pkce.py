# mcp_oauth_gateway/oauth/pkce.py
import secrets
import hashlib
import base64
import re

# RFC 7636 specifies length between 43 and 128 characters
CODE_VERIFIER_LENGTH = 64

SUPPORTED_CHALLENGE_METHODS = ("S256",)


def generate_pkce_code_verifier(length: int = CODE_VERIFIER_LENGTH) -> str:
    """
    Generates a cryptographically random PKCE code verifier.
    (RFC 7636 - Section 4.1)
    """
    if not (43 <= length <= 128):
        raise ValueError("PKCE code verifier length must be between 43 and 128 characters.")
    verifier = secrets.token_urlsafe(length)
    return verifier[:length]


def generate_pkce_code_challenge(code_verifier: str, method: str = "S256") -> str:
    """
    Derives the S256 code challenge for a verifier. (RFC 7636 - Section 4.2)
    The "plain" method is not accepted by this server.
    """
    if method not in SUPPORTED_CHALLENGE_METHODS:
        raise ValueError(f"Unsupported PKCE code challenge method: {method}. Must be 'S256'.")
    hashed_verifier = hashlib.sha256(code_verifier.encode('ascii')).digest()
    return base64.urlsafe_b64encode(hashed_verifier).rstrip(b'=').decode('ascii')


def validate_pkce_code_verifier_format(code_verifier: str) -> bool:
    """Checks length and allowed characters (A-Z, a-z, 0-9, '-', '.', '_', '~')."""
    if not (43 <= len(code_verifier) <= 128):
        return False
    return re.match(r"^[A-Za-z0-9\-._~]+$", code_verifier) is not None


def verify_pkce_code_verifier(code_verifier: str, expected_challenge: str) -> bool:
    """Constant-time comparison of the verifier's S256 challenge with the stored one."""
    if not validate_pkce_code_verifier_format(code_verifier):
        return False
    actual = generate_pkce_code_challenge(code_verifier)
    return secrets.compare_digest(actual, expected_challenge)
