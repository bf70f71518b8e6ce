from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .errors import InitializationError, SigningError, VerificationError

# Any change to number formatting, escaping or separators breaks every
# signature already in flight; bump this alongside the broker.
# Known divergences from JavaScript JSON.stringify: floats render as Python
# does ("1.0", "1e+16" where JS writes "1", "10000000000000000"), and keys are
# sorted by code point where JS sorts by UTF-16 unit, so keys outside the BMP
# can order differently. Payloads shared with JS signers should carry integers
# or strings rather than floats.
CANONICAL_FORM_VERSION = "json-sorted-v1"

ALGORITHM_RSA_SHA256 = "RSA-SHA256"
ALGORITHM_ECDSA_SHA256 = "ECDSA-SHA256"
ALGORITHM_ED25519 = "ed25519"

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey, SigningKey]
PublicKey = Union[rsa.RSAPublicKey, ec.EllipticCurvePublicKey, ed25519.Ed25519PublicKey, VerifyKey]


def stable_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def canonicalize(obj: Any) -> bytes:
    """Deterministic signing input for ``obj``.

    Mappings are emitted with lexicographically sorted keys at every depth,
    sequences keep their order, and no insignificant whitespace is written.
    ``str`` is taken as already serialized and only UTF-8 encoded; ``bytes``
    pass through untouched. Cyclic, too deeply nested or non-JSON values raise
    ``ValueError``.
    """
    if isinstance(obj, (bytes, bytearray)):
        return bytes(obj)
    if isinstance(obj, str):
        return obj.encode("utf-8")
    try:
        return stable_json(obj).encode("utf-8")
    except TypeError as exc:
        raise ValueError(f"payload is not JSON serializable: {exc}") from exc
    except RecursionError as exc:
        raise ValueError("payload nesting too deep") from exc


def canonical_sha256_hex(obj: Any) -> str:
    return hashlib.sha256(canonicalize(obj)).hexdigest()


def algorithm_of(key: Union[PrivateKey, PublicKey]) -> str:
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        return ALGORITHM_RSA_SHA256
    if isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        return ALGORITHM_ECDSA_SHA256
    if isinstance(key, (ed25519.Ed25519PrivateKey, ed25519.Ed25519PublicKey, SigningKey, VerifyKey)):
        return ALGORITHM_ED25519
    raise ValueError(f"unsupported key type: {type(key).__name__}")


def load_private_key(key: Any) -> PrivateKey:
    """Accepts a loaded key, PEM text/bytes, or a 32-byte Ed25519 seed."""
    if isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey, SigningKey)):
        return key
    if isinstance(key, (bytes, bytearray)) and len(key) == 32:
        return SigningKey(bytes(key))
    if isinstance(key, str):
        key = key.encode("utf-8")
    if not isinstance(key, (bytes, bytearray)) or not key:
        raise ValueError("private key must be PEM text, PEM bytes or a 32-byte ed25519 seed")
    try:
        loaded = serialization.load_pem_private_key(bytes(key), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ValueError(f"invalid private key: {exc}") from exc
    algorithm_of(loaded)
    return loaded


def load_public_key(key: Any) -> PublicKey:
    """Accepts a loaded key, PEM text/bytes, or a raw 32-byte Ed25519 public key."""
    if isinstance(key, (rsa.RSAPublicKey, ec.EllipticCurvePublicKey, ed25519.Ed25519PublicKey, VerifyKey)):
        return key
    if isinstance(key, (bytes, bytearray)) and len(key) == 32:
        return VerifyKey(bytes(key))
    if isinstance(key, str):
        key = key.encode("utf-8")
    if not isinstance(key, (bytes, bytearray)) or not key:
        raise ValueError("public key must be PEM text, PEM bytes or a 32-byte ed25519 key")
    try:
        loaded = serialization.load_pem_public_key(bytes(key))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ValueError(f"invalid public key: {exc}") from exc
    algorithm_of(loaded)
    return loaded


def _sign_raw(key: PrivateKey, data: bytes) -> bytes:
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return key.sign(data, ec.ECDSA(hashes.SHA256()))
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return key.sign(data)
    return key.sign(data).signature


def _verify_raw(key: PublicKey, data: bytes, signature: bytes) -> None:
    if isinstance(key, rsa.RSAPublicKey):
        key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    elif isinstance(key, ec.EllipticCurvePublicKey):
        key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
    elif isinstance(key, ed25519.Ed25519PublicKey):
        key.verify(signature, data)
    else:
        key.verify(data, signature)


def sign_payload(payload: Any, private_key: Any) -> str:
    """Sign the canonical form of ``payload`` and return the base64 signature."""
    try:
        data = canonicalize(payload)
    except ValueError as exc:
        raise SigningError(f"cannot canonicalize payload: {exc}") from exc
    try:
        key = load_private_key(private_key)
    except ValueError as exc:
        raise SigningError(str(exc)) from exc
    try:
        raw = _sign_raw(key, data)
    except Exception as exc:
        raise SigningError(f"signing failed: {exc}") from exc
    return base64.b64encode(raw).decode("ascii")


def verify_signature(payload: Any, signature: str, public_key: Any) -> bool:
    """Check ``signature`` against the canonical form of ``payload``.

    Returns ``False`` for any mismatch, including a signature that is not valid
    base64. Raises ``VerificationError`` only when ``public_key`` cannot be
    parsed, so a misconfigured verifier is never mistaken for a forgery.
    """
    try:
        key = load_public_key(public_key)
    except ValueError as exc:
        raise VerificationError(str(exc)) from exc
    try:
        data = canonicalize(payload)
    except ValueError:
        return False
    if not isinstance(signature, (str, bytes)) or not signature:
        return False
    try:
        raw = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return False
    try:
        _verify_raw(key, data, raw)
    except (InvalidSignature, BadSignatureError, ValueError):
        return False
    return True


def public_key_pem(key: PublicKey) -> str:
    if isinstance(key, VerifyKey):
        key = ed25519.Ed25519PublicKey.from_public_bytes(bytes(key))
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


@dataclass(frozen=True)
class KeyMaterial:
    """The client's signing key and, optionally, the key used for local verification."""

    private_key: PrivateKey
    public_key: Optional[PublicKey] = None

    @property
    def algorithm(self) -> str:
        return algorithm_of(self.private_key)

    @classmethod
    def load(cls, private_key: Any, public_key: Any = None) -> "KeyMaterial":
        if private_key is None or private_key == "" or private_key == b"":
            raise InitializationError("private key is required")
        try:
            priv = load_private_key(private_key)
        except ValueError as exc:
            raise InitializationError(str(exc)) from exc
        pub: Optional[PublicKey] = None
        if public_key is not None:
            try:
                pub = load_public_key(public_key)
            except ValueError as exc:
                raise InitializationError(str(exc)) from exc
            if algorithm_of(pub) != algorithm_of(priv):
                raise InitializationError("public key algorithm does not match private key")
        return cls(private_key=priv, public_key=pub)

    @classmethod
    def generate(cls, algorithm: str = ALGORITHM_RSA_SHA256) -> "KeyMaterial":
        if algorithm == ALGORITHM_RSA_SHA256:
            priv: PrivateKey = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        elif algorithm == ALGORITHM_ECDSA_SHA256:
            priv = ec.generate_private_key(ec.SECP256R1())
        elif algorithm == ALGORITHM_ED25519:
            priv = SigningKey.generate()
        else:
            raise ValueError(f"unsupported algorithm: {algorithm}")
        return cls(private_key=priv, public_key=derive_public_key(priv))

    def sign(self, payload: Any) -> str:
        return sign_payload(payload, self.private_key)

    def verify(self, payload: Any, signature: str) -> bool:
        if self.public_key is None:
            raise VerificationError("no public key configured for verification")
        return verify_signature(payload, signature, self.public_key)

    def public_key_pem(self) -> str:
        return public_key_pem(self.public_key or derive_public_key(self.private_key))


def derive_public_key(key: PrivateKey) -> PublicKey:
    if isinstance(key, SigningKey):
        return key.verify_key
    return key.public_key()
