"""
Compression handlers for raw dump files.

Supports multiple formats:
- gzip: .gz (default, matches the nightly dump script)
- bzip2: .bz2
- xz: LZMA compressed .xz
"""

import bz2
import gzip
import logging
import lzma
import os
from pathlib import Path
from typing import Callable, Optional

from .errors import BackupError, CompressionFailed

logger = logging.getLogger(__name__)


# Format -> (extension, opener). Openers accept an exclusive-create mode.
COMPRESSION_FORMATS = {
    'gzip': ('gz', lambda path: gzip.open(path, 'xb', compresslevel=6)),
    'bzip2': ('bz2', lambda path: bz2.open(path, 'xb', compresslevel=9)),
    'xz': ('xz', lambda path: lzma.open(path, 'xb')),
}

CHUNK_SIZE = 1024 * 1024


def compressed_path_for(raw_path, compression_format: str = 'gzip') -> Path:
    """
    Get the compressed file path for a raw dump.

    Args:
        raw_path: Path of the raw dump
        compression_format: Compression format

    Returns:
        Path with the compression extension appended
    """
    if compression_format not in COMPRESSION_FORMATS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(COMPRESSION_FORMATS.keys())}"
        )

    extension, _ = COMPRESSION_FORMATS[compression_format]
    raw_path = Path(raw_path)
    return raw_path.with_name(f"{raw_path.name}.{extension}")


def compress_file(
    raw_path,
    compression_format: str = 'gzip',
    cancellation_check: Optional[Callable[[], None]] = None
) -> Path:
    """
    Compress a raw dump in place.

    The compressed file is created next to the raw file. On success the raw
    file is removed; on failure the partial compressed file is removed and
    the raw file is left for the caller to clean up.

    Args:
        raw_path: Path of the raw dump
        compression_format: Format to use ('gzip', 'bzip2', 'xz')
        cancellation_check: Optional function called between chunks; raises to cancel

    Returns:
        Path of the compressed file

    Raises:
        CompressionFailed: If compression fails or the target already exists
        ValueError: If compression_format is invalid
    """
    raw_path = Path(raw_path)
    target_path = compressed_path_for(raw_path, compression_format)
    _, opener = COMPRESSION_FORMATS[compression_format]

    if not raw_path.is_file():
        raise CompressionFailed(f"Raw dump not found: {raw_path}")

    try:
        target = opener(target_path)
    except FileExistsError:
        # Never touch a file this call did not create
        raise CompressionFailed(f"Compressed file already exists: {target_path.name}")
    except OSError as e:
        raise CompressionFailed(f"Failed to create {target_path.name}: {e}") from e

    try:
        with target, open(raw_path, 'rb') as source:
            while True:
                if cancellation_check:
                    cancellation_check()
                chunk = source.read(CHUNK_SIZE)
                if not chunk:
                    break
                target.write(chunk)
    except BaseException as e:
        # Clean up partial output on failure or cancellation
        _remove_quietly(target_path)
        if isinstance(e, Exception) and not isinstance(e, BackupError):
            raise CompressionFailed(f"Failed to compress {raw_path.name}: {e}") from e
        raise

    try:
        raw_path.unlink()
    except OSError as e:
        _remove_quietly(target_path)
        raise CompressionFailed(f"Failed to remove raw dump {raw_path.name}: {e}") from e

    return target_path


def get_file_size(path) -> int:
    """
    Get the size of a file in bytes.

    Raises:
        CompressionFailed: If the file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(path)
    except FileNotFoundError:
        raise CompressionFailed(f"Artifact not found: {path}")
    except OSError as e:
        raise CompressionFailed(f"Failed to get artifact size: {e}") from e


def _remove_quietly(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove partial file {path}: {e}")
