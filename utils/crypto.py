"""Helper AES-256-CBC compatibili con OpenSSL (busta "Salted__", EVP_BytesToKey)."""

import base64
import binascii
import hashlib
import os
from typing import Optional, Tuple

from Crypto.Cipher import AES
from Crypto.Util.Padding import pad, unpad

OPENSSL_MAGIC = b"Salted__"
KEY_LEN = 32
IV_LEN = 16
SALT_LEN = 8


class DecryptionError(Exception):
    """Qualsiasi errore nel trasformare un ciphertext MegaCloud in testo."""

    def __init__(self, message: str, format_mismatch: bool = False):
        super().__init__(message)
        self.format_mismatch = format_mismatch


def evp_bytes_to_key(password: bytes, salt: bytes, key_len: int = KEY_LEN, iv_len: int = IV_LEN) -> Tuple[bytes, bytes]:
    """Deriva chiave e IV come fa `openssl enc -md md5`."""
    data = b""
    prev = b""
    while len(data) < key_len + iv_len:
        prev = hashlib.md5(prev + password + salt).digest()
        data += prev
    return data[:key_len], data[key_len:key_len + iv_len]


def decrypt_openssl(ciphertext_b64: str, password: str) -> str:
    try:
        encrypted = base64.b64decode(ciphertext_b64, validate=False)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"Invalid base64 payload: {e}", format_mismatch=True) from e

    if encrypted[:SALT_LEN] != OPENSSL_MAGIC:
        # Il formato è cambiato, non la chiave
        raise DecryptionError("Invalid OpenSSL format - missing 'Salted__' prefix", format_mismatch=True)

    salt = encrypted[SALT_LEN:SALT_LEN * 2]
    body = encrypted[SALT_LEN * 2:]
    key, iv = evp_bytes_to_key(password.encode("utf-8"), salt)

    try:
        cipher = AES.new(key, AES.MODE_CBC, iv)
        decrypted = unpad(cipher.decrypt(body), AES.block_size)
        return decrypted.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise DecryptionError(f"Decryption failed: {e}") from e


def encrypt_openssl(plaintext: str, password: str, salt: Optional[bytes] = None) -> str:
    """Inverso di decrypt_openssl; produce la stessa busta di `openssl enc -aes-256-cbc -md md5 -a`."""
    salt = salt if salt is not None else os.urandom(SALT_LEN)
    if len(salt) != SALT_LEN:
        raise ValueError("salt must be 8 bytes")
    key, iv = evp_bytes_to_key(password.encode("utf-8"), salt)
    cipher = AES.new(key, AES.MODE_CBC, iv)
    body = cipher.encrypt(pad(plaintext.encode("utf-8"), AES.block_size))
    return base64.b64encode(OPENSSL_MAGIC + salt + body).decode("ascii")
