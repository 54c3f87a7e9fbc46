"""
crypto.py: secp256k1 ECDH + AES-128-GCM "hybrid" message encryption.

Why this exists:
- Keep all curve and AEAD bits in one place so the client can call
  `encrypt/decrypt` without worrying about points, scalars or tags.
- Stay byte-compatible with the browser client: public keys are hex of the
  uncompressed point, envelopes carry the IV and ciphertext as int arrays.

How one message is sealed:
  1. fresh ephemeral keypair (never reused, never stored)
  2. ECDH(ephemeral_priv, recipient_pub) -> shared x-coordinate
  3. AES key = first 16 bytes of that x-coordinate's minimal hex rendering
  4. random 12-byte nonce, AES-GCM, no associated data, tag appended

Known weakness, kept for wire compatibility: step 3 is a plain truncation of
the raw shared secret, not a real KDF (no salt, no hash, no context binding).
"""

import os
from dataclasses import dataclass
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailure, CryptoError, DecodeFailure, KeyGenerationFailure
from .keystore import KeyPair, KeyStore

CURVE = ec.SECP256K1()
SCALAR_SIZE = 32
POINT_SIZE = 65       # 0x04 || X || Y
KEY_SIZE = 16         # AES-128
NONCE_SIZE = 12
TAG_SIZE = 16


# -------------
# Key utilities
# -------------

def _encode_point(pub: ec.EllipticCurvePublicKey) -> bytes:
    return pub.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )


def generate_keypair() -> KeyPair:
    """Fresh identity (or ephemeral) keypair. Raises KeyGenerationFailure."""
    try:
        priv = ec.generate_private_key(CURVE)
        scalar = priv.private_numbers().private_value.to_bytes(SCALAR_SIZE, "big")
        return KeyPair(public_key=_encode_point(priv.public_key()), private_key=bytearray(scalar))
    except Exception as exc:
        raise KeyGenerationFailure(f"could not generate secp256k1 key: {exc}") from exc


def load_public_key(raw: bytes) -> ec.EllipticCurvePublicKey:
    """Parse an encoded point; anything that isn't on the curve is a DecodeFailure."""
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, bytes(raw))
    except (ValueError, TypeError) as exc:
        raise DecodeFailure(f"not a secp256k1 public key: {exc}") from exc


def load_private_key(raw: bytes) -> ec.EllipticCurvePrivateKey:
    """Rebuild a private key object from the raw scalar (short-lived; never cached)."""
    if len(raw) != SCALAR_SIZE:
        raise CryptoError("private scalar must be 32 bytes")
    try:
        return ec.derive_private_key(int.from_bytes(raw, "big"), CURVE)
    except ValueError as exc:
        # Zero scalar, i.e. a wiped key.
        raise CryptoError(f"unusable private key: {exc}") from exc


def public_key_from_hex(data: str) -> bytes:
    """Validate a hex public key coming off the wire and return its bytes."""
    if not isinstance(data, str):
        raise DecodeFailure("public key must be a hex string")
    try:
        raw = bytes.fromhex(data)
    except ValueError as exc:
        raise DecodeFailure("public key is not valid hex") from exc
    load_public_key(raw)
    return raw


def derive_aes_key(shared_secret: bytes) -> bytes:
    """
    Shared x-coordinate -> 16-byte AES key, the way the browser does it:
    render the secret as minimal hex (big-number style, no leading zeros),
    take the first 32 hex digits, decode them.
    """
    digits = shared_secret.hex().lstrip("0")
    if len(digits) < 2 * KEY_SIZE:
        # Astronomically unlikely; the browser would fail to import such a key too.
        raise CryptoError("shared secret too short for key derivation")
    return bytes.fromhex(digits[: 2 * KEY_SIZE])


def _shared_key(private_scalar: bytes, peer_public: bytes) -> bytes:
    priv = load_private_key(private_scalar)
    shared = priv.exchange(ec.ECDH(), load_public_key(peer_public))
    return derive_aes_key(shared)


# --------
# Envelope
# --------

def _byte_list(value: Any, name: str) -> bytes:
    if not isinstance(value, list) or not all(type(b) is int and 0 <= b <= 255 for b in value):
        raise DecodeFailure(f"{name} must be a list of byte values")
    return bytes(value)


@dataclass(frozen=True)
class EncryptedEnvelope:
    """
    One sealed message. Carries no sender/recipient metadata; the relay
    supplies those out of band.
    """
    ephemeral_public_key: bytes
    nonce: bytes
    ciphertext: bytes   # includes the 16-byte GCM tag at the end

    def __post_init__(self) -> None:
        if len(self.nonce) != NONCE_SIZE:
            raise DecodeFailure(f"nonce must be {NONCE_SIZE} bytes")
        if len(self.ciphertext) < TAG_SIZE:
            raise DecodeFailure("ciphertext shorter than the authentication tag")
        if len(self.ephemeral_public_key) != POINT_SIZE:
            raise DecodeFailure("ephemeral public key must be an uncompressed point")

    def to_wire(self) -> Dict[str, Any]:
        """Browser-compatible JSON shape."""
        return {
            "ephemeralPublicKey": self.ephemeral_public_key.hex(),
            "iv": list(self.nonce),
            "encryptedData": list(self.ciphertext),
        }

    @classmethod
    def from_wire(cls, obj: Any) -> "EncryptedEnvelope":
        """Validate the shape before any crypto runs; malformed input is a DecodeFailure."""
        if not isinstance(obj, dict):
            raise DecodeFailure("envelope must be an object")
        missing = {"ephemeralPublicKey", "iv", "encryptedData"} - obj.keys()
        if missing:
            raise DecodeFailure(f"envelope missing fields: {sorted(missing)}")
        eph = obj["ephemeralPublicKey"]
        if not isinstance(eph, str):
            raise DecodeFailure("ephemeralPublicKey must be a hex string")
        try:
            eph_raw = bytes.fromhex(eph)
        except ValueError as exc:
            raise DecodeFailure("ephemeralPublicKey is not valid hex") from exc
        return cls(
            ephemeral_public_key=eph_raw,
            nonce=_byte_list(obj["iv"], "iv"),
            ciphertext=_byte_list(obj["encryptedData"], "encryptedData"),
        )


# ---------------------------
# Encryption & Decryption API
# ---------------------------

def encrypt_sync(plaintext: str, recipient_public_key: bytes) -> EncryptedEnvelope:
    """Seal `plaintext` for the holder of `recipient_public_key`."""
    ephemeral = generate_keypair()
    try:
        key = _shared_key(ephemeral.private_key, recipient_public_key)
    finally:
        # Single use: the ephemeral scalar is gone as soon as the key exists.
        ephemeral.wipe()
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return EncryptedEnvelope(ephemeral.public_key, nonce, ct)


def decrypt_sync(envelope: EncryptedEnvelope, local_private_key: bytes) -> str:
    """
    Open an envelope with one private key.

    Raises:
        AuthenticationFailure: tag mismatch or no usable key; no partial output.
        DecodeFailure: the ephemeral key is malformed or plaintext isn't UTF-8.
    """
    try:
        key = _shared_key(local_private_key, envelope.ephemeral_public_key)
    except DecodeFailure:
        raise
    except CryptoError as exc:
        raise AuthenticationFailure(str(exc)) from exc
    try:
        data = AESGCM(key).decrypt(envelope.nonce, envelope.ciphertext, None)
    except InvalidTag as exc:
        raise AuthenticationFailure("message failed authentication") from exc
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeFailure("decrypted bytes are not valid UTF-8") from exc


async def encrypt(plaintext: str, recipient_public_key: bytes) -> EncryptedEnvelope:
    """Awaitable form; callers must not assume the result is available synchronously."""
    return encrypt_sync(plaintext, recipient_public_key)


async def decrypt(envelope: EncryptedEnvelope, local_private_key: bytes) -> str:
    return decrypt_sync(envelope, local_private_key)


async def open_envelope(envelope: EncryptedEnvelope, store: KeyStore) -> str:
    """
    Decrypt with the current key, then (only on AuthenticationFailure) with
    the retiring one. The last AuthenticationFailure propagates.
    """
    failure: AuthenticationFailure = AuthenticationFailure("no key available")
    for pair in store.candidates():
        try:
            return await decrypt(envelope, pair.private_key)
        except AuthenticationFailure as exc:
            failure = exc
    raise failure
