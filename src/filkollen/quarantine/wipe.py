"""Secure erase: random overwrite passes, then unlink.

The overwrite is a best effort. On journaling or copy-on-write filesystems
and on flash storage with wear levelling the old blocks may survive; the
contract is only "attempt overwrite, always end with the file removed".
"""

import logging
import os

from .exceptions import DeleteFailed

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DEFAULT_PASSES = 3


def _overwrite(path: str, passes: int) -> None:
    size = os.path.getsize(path)
    with open(path, "r+b", buffering=0) as fh:
        for _ in range(passes):
            fh.seek(0)
            remaining = size
            while remaining > 0:
                chunk = min(CHUNK_SIZE, remaining)
                fh.write(os.urandom(chunk))
                remaining -= chunk
            fh.flush()
            os.fsync(fh.fileno())


def secure_delete(path: str, passes: int = DEFAULT_PASSES) -> bool:
    """
    Overwrite ``path`` with random data ``passes`` times, then delete it.

    Falls back to a plain delete if any overwrite pass fails.

    Returns:
        True if every overwrite pass completed, False if the plain-delete
        fallback was used (the file is gone either way)

    Raises:
        DeleteFailed: the file could not be removed at all
    """
    overwritten = True
    try:
        _overwrite(path, passes)
    except FileNotFoundError:
        return True
    except OSError as exc:
        overwritten = False
        logger.warning("Secure overwrite of %s failed, falling back to plain delete: %s", path, exc)

    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise DeleteFailed(f"Could not delete {path}: {exc}") from exc
    return overwritten
