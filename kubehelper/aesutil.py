"""AES-CBC encryption with base64 transport encoding for user identities."""

from __future__ import annotations

import base64
import binascii

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

BLOCK_SIZE = 16
_KEY_SIZE = 16


class AESError(ValueError):
    """Raised when a ciphertext cannot be decoded, decrypted or unpadded."""


def pkcs7_pad(data: bytes, block_size: int) -> bytes:
    """Append PKCS#7 padding so the length is a multiple of ``block_size``."""
    padding = block_size - len(data) % block_size
    return bytes(data) + bytes([padding]) * padding


def pkcs7_unpad(data: bytes) -> bytes:
    """Strip PKCS#7 padding, trusting the final byte as the pad length."""
    if not data:
        raise AESError("invalid padding size")
    unpadding = data[-1]
    if unpadding > len(data):
        raise AESError("invalid padding size")
    return bytes(data[: len(data) - unpadding])


def _normalise_key(key: str) -> bytes:
    """Fit the key to 16 bytes: truncate, or right-pad with ASCII '0'."""
    return key.encode("utf-8")[:_KEY_SIZE].ljust(_KEY_SIZE, b"0")


def _cipher(key: str) -> Cipher:
    raw_key = _normalise_key(key)
    # The key doubles as the IV.
    return Cipher(algorithms.AES(raw_key), modes.CBC(raw_key))


def encrypt_base64(plain: str, key: str) -> str:
    """Encrypt ``plain`` with AES-CBC and return standard base64 text."""
    encryptor = _cipher(key).encryptor()
    padded = pkcs7_pad(plain.encode("utf-8"), BLOCK_SIZE)
    crypted = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(crypted).decode("ascii")


def decrypt_base64(cipher_text: str, key: str) -> str:
    """Decode standard base64 text and decrypt it with AES-CBC."""
    try:
        raw = base64.b64decode(cipher_text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AESError(f"illegal base64 data: {exc}") from exc
    if len(raw) % BLOCK_SIZE != 0:
        raise AESError("cipherText is not a multiple of the block size")
    decryptor = _cipher(key).decryptor()
    plain = decryptor.update(raw) + decryptor.finalize()
    return pkcs7_unpad(plain).decode("utf-8", errors="replace")