"""Tests for the signing key set."""

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from sluice.crypto.keys import SigningKey, SigningKeyProvider
from sluice.exceptions import SignatureInvalidError

SECRET = "k" * 48


def rsa_pem() -> bytes:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


class TestSigningKey:
    def test_hmac_from_secret(self):
        key = SigningKey.hmac("k1", SECRET)
        assert key.algorithm == "HS256"
        assert key.signing_key == SECRET.encode()

    def test_hmac_generated_secrets_differ(self):
        assert SigningKey.hmac("a").signing_key != SigningKey.hmac("b").signing_key

    def test_rsa(self):
        key = SigningKey.rsa("r1", rsa_pem())
        assert key.algorithm == "RS256"


class TestSigningKeyProvider:
    def test_sign_and_verify(self):
        keys = SigningKeyProvider([SigningKey.hmac("k1", SECRET)])
        token = keys.sign({"jti": "abc", "sub": "alice"})
        assert jwt.get_unverified_header(token)["kid"] == "k1"
        assert keys.verify(token)["jti"] == "abc"

    def test_rsa_sign_and_verify(self):
        keys = SigningKeyProvider([SigningKey.rsa("r1", rsa_pem())])
        assert keys.verify(keys.sign({"jti": "x"}))["jti"] == "x"

    def test_expired_claims_still_verify(self):
        keys = SigningKeyProvider([SigningKey.hmac("k1", SECRET)])
        token = keys.sign({"jti": "old", "exp": 1})
        assert keys.verify(token)["exp"] == 1

    def test_tampered_signature(self):
        keys = SigningKeyProvider([SigningKey.hmac("k1", SECRET)])
        token = keys.sign({"jti": "abc"})
        head, body, sig = token.split(".")
        forged = ".".join([head, body, sig[:-4] + ("AAAA" if not sig.endswith("AAAA") else "BBBB")])
        with pytest.raises(SignatureInvalidError):
            keys.verify(forged)

    def test_foreign_key(self):
        other = SigningKeyProvider([SigningKey.hmac("k1", "x" * 48)])
        keys = SigningKeyProvider([SigningKey.hmac("k1", SECRET)])
        with pytest.raises(SignatureInvalidError):
            keys.verify(other.sign({"jti": "abc"}))

    def test_unknown_kid(self):
        other = SigningKeyProvider([SigningKey.hmac("elsewhere", SECRET)])
        keys = SigningKeyProvider([SigningKey.hmac("k1", SECRET)])
        with pytest.raises(SignatureInvalidError, match="No matching signing key"):
            keys.verify(other.sign({"jti": "abc"}))

    def test_alg_none_rejected(self):
        keys = SigningKeyProvider([SigningKey.hmac("k1", SECRET)])
        unsigned = jwt.encode({"jti": "abc"}, None, algorithm="none", headers={"kid": "k1"})
        with pytest.raises(SignatureInvalidError):
            keys.verify(unsigned)

    def test_malformed(self):
        keys = SigningKeyProvider([SigningKey.hmac("k1", SECRET)])
        with pytest.raises(SignatureInvalidError):
            keys.verify("not.a.jwt")

    def test_rotation_keeps_old_tokens_valid(self):
        keys = SigningKeyProvider([SigningKey.hmac("k1", SECRET)])
        old = keys.sign({"jti": "old"})
        keys.rotate(SigningKey.hmac("k2", "z" * 48))
        assert keys.current_kid == "k2"
        assert jwt.get_unverified_header(keys.sign({"jti": "new"}))["kid"] == "k2"
        assert keys.verify(old)["jti"] == "old"

    def test_retire(self):
        keys = SigningKeyProvider([SigningKey.hmac("k1", SECRET)])
        old = keys.sign({"jti": "old"})
        keys.rotate(SigningKey.hmac("k2", "z" * 48))
        keys.retire("k1")
        with pytest.raises(SignatureInvalidError):
            keys.verify(old)

    def test_cannot_retire_current(self):
        keys = SigningKeyProvider([SigningKey.hmac("k1", SECRET)])
        with pytest.raises(ValueError):
            keys.retire("k1")

    def test_current_kid_must_exist(self):
        with pytest.raises(ValueError):
            SigningKeyProvider([SigningKey.hmac("k1", SECRET)], current_kid="missing")
