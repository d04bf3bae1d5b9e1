"""
Streaming passphrase encryption for backup artifacts.

Uses AES-256-GCM with a key derived from the passphrase via PBKDF2. The
plaintext is cut into frames that are sealed one by one, so memory use
stays bounded whatever the size of the dump.

Layout:
    header: MAGIC | salt (16) | nonce prefix (8) | PBKDF2 iterations (4)
    frame:  flag (1) | ciphertext length (4) | ciphertext + tag

The last frame carries the final flag. Flag and header are bound into
every frame's associated data, so a stream cut at a frame boundary or
with reordered frames fails to decrypt.
"""

import os
import struct
from typing import Iterable, Iterator, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


MAGIC = b'DKENC1'
SALT_SIZE = 16
NONCE_PREFIX_SIZE = 8
FRAME_SIZE = 64 * 1024
DEFAULT_ITERATIONS = 480000  # OWASP recommended iterations for 2023+

_HEADER = struct.Struct('>6s16s8sI')
_FRAME = struct.Struct('>BI')
_FLAG_DATA = 0
_FLAG_FINAL = 1
_TAG_SIZE = 16


class DecryptionError(Exception):
    """Raised when an encrypted stream is malformed, truncated or tampered with."""
    pass


def derive_key(passphrase: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytes:
    """
    Derive a 32-byte AES key from a passphrase using PBKDF2-HMAC-SHA256.

    Args:
        passphrase: User supplied passphrase
        salt: Random salt stored in the stream header
        iterations: PBKDF2 iteration count

    Returns:
        32 raw key bytes
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode())


def _nonce(prefix: bytes, counter: int) -> bytes:
    return prefix + struct.pack('>I', counter)


def encrypt_stream(
    chunks: Iterable[bytes],
    passphrase: str,
    salt: Optional[bytes] = None,
    nonce_prefix: Optional[bytes] = None,
    iterations: int = DEFAULT_ITERATIONS
) -> Iterator[bytes]:
    """
    Encrypt a chunk stream.

    Output is a fixed function of (salt, nonce prefix, passphrase, plaintext);
    salt and nonce prefix are random unless given.

    Args:
        chunks: Plaintext chunks
        passphrase: Encryption passphrase
        salt: Optional 16-byte salt
        nonce_prefix: Optional 8-byte nonce prefix
        iterations: PBKDF2 iteration count, stored in the header

    Yields:
        Encrypted bytes (header first, then frames)
    """
    salt = salt if salt is not None else os.urandom(SALT_SIZE)
    nonce_prefix = nonce_prefix if nonce_prefix is not None else os.urandom(NONCE_PREFIX_SIZE)
    if len(salt) != SALT_SIZE or len(nonce_prefix) != NONCE_PREFIX_SIZE:
        raise ValueError("salt must be 16 bytes and nonce_prefix 8 bytes")

    header = _HEADER.pack(MAGIC, salt, nonce_prefix, iterations)
    aead = AESGCM(derive_key(passphrase, salt, iterations))
    yield header

    counter = 0
    buffer = bytearray()

    def seal(data: bytes, flag: int) -> bytes:
        sealed = aead.encrypt(_nonce(nonce_prefix, counter), data, header + bytes([flag]))
        return _FRAME.pack(flag, len(sealed)) + sealed

    for chunk in chunks:
        buffer.extend(chunk)
        while len(buffer) > FRAME_SIZE:
            yield seal(bytes(buffer[:FRAME_SIZE]), _FLAG_DATA)
            del buffer[:FRAME_SIZE]
            counter += 1
            if counter >= 2 ** 32:
                raise ValueError("Stream too long for a single nonce prefix")

    yield seal(bytes(buffer), _FLAG_FINAL)


class _Reader:
    """Pulls exact byte counts out of a chunk iterator."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(chunks)
        self._buffer = bytearray()

    def read(self, size: int) -> bytes:
        while len(self._buffer) < size:
            chunk = next(self._chunks, None)
            if chunk is None:
                break
            self._buffer.extend(chunk)
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data


def decrypt_stream(chunks: Iterable[bytes], passphrase: str) -> Iterator[bytes]:
    """
    Decrypt a stream produced by ``encrypt_stream``.

    Raises:
        DecryptionError: On a wrong passphrase, tampering, truncation or
            trailing data after the final frame
    """
    reader = _Reader(chunks)
    header = reader.read(_HEADER.size)
    if len(header) != _HEADER.size:
        raise DecryptionError("Encrypted stream is shorter than its header")

    magic, salt, nonce_prefix, iterations = _HEADER.unpack(header)
    if magic != MAGIC:
        raise DecryptionError("Not an encrypted backup stream")

    aead = AESGCM(derive_key(passphrase, salt, iterations))
    counter = 0

    while True:
        frame_header = reader.read(_FRAME.size)
        if len(frame_header) != _FRAME.size:
            raise DecryptionError("Encrypted stream is truncated (missing final frame)")

        flag, length = _FRAME.unpack(frame_header)
        if flag not in (_FLAG_DATA, _FLAG_FINAL) or length < _TAG_SIZE:
            raise DecryptionError(f"Corrupt frame header at frame {counter}")

        sealed = reader.read(length)
        if len(sealed) != length:
            raise DecryptionError(f"Encrypted stream is truncated inside frame {counter}")

        try:
            yield aead.decrypt(_nonce(nonce_prefix, counter), sealed, header + bytes([flag]))
        except InvalidTag:
            raise DecryptionError(f"Authentication failed for frame {counter} (wrong passphrase or corrupted data)")

        if flag == _FLAG_FINAL:
            if reader.read(1):
                raise DecryptionError("Unexpected data after final frame")
            return
        counter += 1
