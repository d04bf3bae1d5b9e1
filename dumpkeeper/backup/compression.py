"""
Streaming transforms applied to a raw snapshot.

Supports:
- compression: 'none' or gzip at levels 1-9 ('gzip' or 'gzip-N')
- encryption: none or AES-256-GCM with a passphrase

Every transform is a generator over byte chunks, so transforms compose
like a shell pipeline and memory use does not depend on the dump size.
"""

import zlib
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from dumpkeeper.utils.crypto import encrypt_stream, decrypt_stream, DecryptionError, DEFAULT_ITERATIONS
from dumpkeeper.utils.credentials import SecretHandle, CredentialError
from .errors import BackupError, TransformError, PolicyError


DEFAULT_GZIP_LEVEL = 6

# wbits=31 selects a gzip container; zlib writes mtime 0 and no file
# name, so identical input always compresses to identical bytes
_GZIP_WBITS = 31


@dataclass(frozen=True)
class TransformOptions:
    """
    Transform pipeline configuration.

    Attributes:
        compression: 'none' or 'gzip'
        level: gzip compression level (1-9)
        passphrase: Credential handle of the encryption passphrase, or None
        kdf_iterations: PBKDF2 iterations used when encrypting
    """
    compression: str = 'gzip'
    level: int = DEFAULT_GZIP_LEVEL
    passphrase: Optional[SecretHandle] = None
    kdf_iterations: int = DEFAULT_ITERATIONS

    def __post_init__(self):
        if self.compression not in ('none', 'gzip'):
            raise PolicyError(f"Invalid compression: {self.compression}. Valid options: ['none', 'gzip', 'gzip-N']")
        if not 1 <= self.level <= 9:
            raise PolicyError(f"Invalid gzip level: {self.level}")

    @classmethod
    def parse(cls, compression: str, passphrase: Optional[SecretHandle] = None, **kwargs) -> 'TransformOptions':
        """
        Build options from a compression setting such as 'none', 'gzip' or 'gzip-9'.
        """
        name, _, level = compression.partition('-')
        if name == 'gzip' and level:
            if not level.isdigit():
                raise PolicyError(f"Invalid compression: {compression}")
            return cls('gzip', int(level), passphrase, **kwargs)
        if level:
            raise PolicyError(f"Invalid compression: {compression}")
        return cls(name, DEFAULT_GZIP_LEVEL, passphrase, **kwargs)

    @property
    def encrypted(self) -> bool:
        return self.passphrase is not None

    @property
    def extension(self) -> str:
        """Artifact extension for this pipeline: sql, sql.gz, sql.enc or sql.gz.enc."""
        extension = 'sql'
        if self.compression == 'gzip':
            extension += '.gz'
        if self.encrypted:
            extension += '.enc'
        return extension

    def describe(self) -> str:
        parts = ['gzip-%d' % self.level if self.compression == 'gzip' else 'no compression']
        parts.append('encrypted' if self.encrypted else 'not encrypted')
        return ', '.join(parts)


def gzip_stream(chunks: Iterable[bytes], level: int = DEFAULT_GZIP_LEVEL) -> Iterator[bytes]:
    """Compress a chunk stream into a gzip container."""
    compressor = zlib.compressobj(level, zlib.DEFLATED, _GZIP_WBITS)
    for chunk in chunks:
        data = compressor.compress(chunk)
        if data:
            yield data
    yield compressor.flush()


def gunzip_stream(chunks: Iterable[bytes]) -> Iterator[bytes]:
    """Decompress a gzip chunk stream, rejecting truncated input."""
    decompressor = zlib.decompressobj(_GZIP_WBITS)
    for chunk in chunks:
        data = decompressor.decompress(chunk)
        if data:
            yield data
    tail = decompressor.flush()
    if tail:
        yield tail
    if not decompressor.eof:
        raise zlib.error("gzip stream is truncated")


def _guarded(stream: Iterator[bytes], action: str) -> Iterator[bytes]:
    """Re-raise any failure inside a pipeline as TransformError."""
    try:
        yield from stream
    except TransformError:
        raise
    except BackupError as e:
        # An upstream short read must fail the transform, not end it early
        raise TransformError(f"{action} aborted, input stream failed: {e}", details={'cause': e.error_kind}) from e
    except (zlib.error, DecryptionError, CredentialError, ValueError) as e:
        raise TransformError(f"{action} failed: {e}") from e


def transform(chunks: Iterable[bytes], options: TransformOptions,
              salt: bytes = None, nonce_prefix: bytes = None) -> Iterator[bytes]:
    """
    Apply compression and encryption to a raw snapshot stream.

    Args:
        chunks: Raw snapshot chunks
        options: TransformOptions
        salt: Optional fixed encryption salt (random when omitted)
        nonce_prefix: Optional fixed nonce prefix (random when omitted)

    Returns:
        Iterator over the transformed bytes

    Raises:
        TransformError: From the iteration, if any stage or the input fails
    """
    return _guarded(_lazy(lambda: _pipeline(chunks, options, salt, nonce_prefix)), 'Transform')


def _pipeline(chunks, options, salt, nonce_prefix) -> Iterator[bytes]:
    stream = iter(chunks)
    if options.compression == 'gzip':
        stream = gzip_stream(stream, options.level)
    if options.encrypted:
        stream = encrypt_stream(stream, options.passphrase.reveal(), salt=salt,
                                nonce_prefix=nonce_prefix, iterations=options.kdf_iterations)
    return stream


def restore_stream(chunks: Iterable[bytes], options: TransformOptions) -> Iterator[bytes]:
    """
    Invert ``transform``: decrypt and decompress a stored artifact.

    Raises:
        TransformError: From the iteration, on a wrong passphrase or corrupt data
    """
    def pipeline():
        stream = iter(chunks)
        if options.encrypted:
            stream = decrypt_stream(stream, options.passphrase.reveal())
        if options.compression == 'gzip':
            stream = gunzip_stream(stream)
        return stream

    return _guarded(_lazy(pipeline), 'Restore')


def _lazy(factory) -> Iterator[bytes]:
    yield from factory()


def options_for_key(key: str, passphrase: Optional[SecretHandle] = None) -> TransformOptions:
    """Derive the restore options from an artifact key's extension."""
    compression = 'gzip' if '.sql.gz' in key else 'none'
    if key.endswith('.enc') and passphrase is None:
        raise PolicyError(f"Artifact {key} is encrypted but no passphrase was given")
    return TransformOptions(compression, passphrase=passphrase if key.endswith('.enc') else None)
