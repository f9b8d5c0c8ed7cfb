from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ingest.errors import DecryptionError, ParseError


_KEY_BYTES = 32
_BLOCK_BITS = 128


def derive_key(password: bytes, salt: bytes, length: int = _KEY_BYTES) -> bytes:
    key = b""
    block = b""
    while len(key) < length:
        block = hashlib.md5(block + password + salt).digest()
        key += block
    return key[:length]


def _envelope_field(envelope: dict, *names: str) -> str:
    for name in names:
        value = envelope.get(name)
        if isinstance(value, str) and value:
            return value
    raise DecryptionError(f"envelope missing field: {names[0]}")


def decrypt_envelope(envelope: object, *, password: str) -> object:
    if not isinstance(envelope, dict):
        raise DecryptionError(f"envelope is not an object: {type(envelope).__name__}")

    try:
        ciphertext = base64.b64decode(
            _envelope_field(envelope, "ct", "ciphertext"), validate=True
        )
        iv = bytes.fromhex(_envelope_field(envelope, "iv"))
        salt = bytes.fromhex(_envelope_field(envelope, "s", "salt"))
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"malformed envelope: {e}") from e

    if not ciphertext:
        raise DecryptionError("empty ciphertext")

    key = derive_key(password.encode("utf-8"), salt)
    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        text = plaintext.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise DecryptionError(f"cipher mismatch: {e}") from e

    return parse_plaintext(text)


def parse_plaintext(text: str) -> object:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"decrypted payload is not JSON: {e.msg}") from e

    if isinstance(parsed, str):
        # the vendor double-encodes the payload
        try:
            return json.loads(parsed)
        except json.JSONDecodeError as e:
            raise ParseError(
                f"decrypted payload is not JSON after second pass: {e.msg}"
            ) from e
    return parsed


def encrypt_payload(
    payload: object,
    *,
    password: str,
    double_encode: bool = False,
    salt: bytes | None = None,
    iv: bytes | None = None,
) -> dict[str, str]:
    salt = salt if salt is not None else os.urandom(8)
    iv = iv if iv is not None else os.urandom(16)

    text = json.dumps(payload)
    if double_encode:
        text = json.dumps(text)

    padder = padding.PKCS7(_BLOCK_BITS).padder()
    padded = padder.update(text.encode("utf-8")) + padder.finalize()
    key = derive_key(password.encode("utf-8"), salt)
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return {
        "ct": base64.b64encode(ciphertext).decode("ascii"),
        "iv": iv.hex(),
        "s": salt.hex(),
    }
