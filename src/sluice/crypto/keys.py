"""
Sluice Signing Keys

Key set used to sign issued JWTs and verify presented ones. Keys are
looked up by ``kid``; exactly one key is current for signing while
retired keys stay available for verification until removed.

Supports HMAC (HS256) shared secrets and RSA (RS256) key pairs.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import jwt
from cryptography.hazmat.primitives import serialization

from sluice.exceptions import SignatureInvalidError

_SUPPORTED_ALGORITHMS = ("HS256", "RS256")


@dataclass(frozen=True)
class SigningKey:
    """One entry in the key set."""

    kid: str
    algorithm: str
    signing_key: Any
    verification_key: Any

    @classmethod
    def hmac(cls, kid: str, secret: str | bytes | None = None) -> SigningKey:
        """HS256 key. If secret is None, generated randomly (ephemeral)."""
        secret = secret or os.urandom(32).hex()
        if isinstance(secret, str):
            secret = secret.encode()
        return cls(kid=kid, algorithm="HS256", signing_key=secret, verification_key=secret)

    @classmethod
    def rsa(cls, kid: str, private_key_pem: bytes) -> SigningKey:
        """RS256 key pair from a PEM-encoded private key."""
        private_key = serialization.load_pem_private_key(private_key_pem, password=None)
        return cls(
            kid=kid,
            algorithm="RS256",
            signing_key=private_key,
            verification_key=private_key.public_key(),
        )


class SigningKeyProvider:
    """Signs and verifies self-contained tokens against a rotating key set."""

    def __init__(self, keys: list[SigningKey] | None = None, current_kid: str | None = None):
        keys = keys or [SigningKey.hmac("default")]
        for key in keys:
            if key.algorithm not in _SUPPORTED_ALGORITHMS:
                raise ValueError(f"Unsupported signing algorithm: {key.algorithm}")
        self._keys: dict[str, SigningKey] = {k.kid: k for k in keys}
        self._current_kid = current_kid or keys[0].kid
        if self._current_kid not in self._keys:
            raise ValueError(f"Current key '{self._current_kid}' not in key set")

    @property
    def current_kid(self) -> str:
        return self._current_kid

    def rotate(self, key: SigningKey) -> None:
        """Add a key and make it current. Older keys keep verifying."""
        self._keys[key.kid] = key
        self._current_kid = key.kid

    def retire(self, kid: str) -> None:
        """Drop a key; tokens signed with it stop verifying."""
        if kid == self._current_kid:
            raise ValueError("Cannot retire the current signing key")
        self._keys.pop(kid, None)

    def sign(self, claims: dict[str, Any]) -> str:
        key = self._keys[self._current_kid]
        return jwt.encode(claims, key.signing_key, algorithm=key.algorithm, headers={"kid": key.kid})

    def verify(self, token: str) -> dict[str, Any]:
        """Verify signature and return claims.

        Expiry, audience and issuer are not checked here; the parser judges
        expiry against the injected clock.

        Raises:
            SignatureInvalidError: Malformed token, unknown kid, or bad signature.
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.exceptions.DecodeError as e:
            raise SignatureInvalidError(f"Malformed token: {e}") from e

        key = self._keys.get(header.get("kid", ""))
        if key is None:
            raise SignatureInvalidError("No matching signing key", details={"kid": header.get("kid")})
        if header.get("alg") != key.algorithm:
            raise SignatureInvalidError("Algorithm does not match signing key", details={"kid": key.kid})

        try:
            return jwt.decode(
                token,
                key.verification_key,
                algorithms=[key.algorithm],
                options={"verify_exp": False, "verify_aud": False, "verify_iat": False, "verify_nbf": False},
            )
        except jwt.exceptions.InvalidTokenError as e:
            raise SignatureInvalidError(f"Signature verification failed: {e}") from e
