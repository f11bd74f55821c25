# Guardian - Directory Scanner
#
# One directory pass: enumerate files under the configured roots, classify
# them on a bounded worker pool and return the hits in enumeration order.
#
# The pass as a whole has a timeout. Work still queued or running when it
# expires is abandoned (a warning is logged) and the partial results are
# returned; a hung file read never blocks the caller past the deadline.

import logging
import os
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Iterable, Iterator, List, Optional, Sequence

from ..core.cancellation import CancellationToken
from .classifier import ThreatClassifier, is_under
from .models import ScanResult

logger = logging.getLogger(__name__)


class DirectoryScanner:
    """
    Bounded-concurrency directory scanner.

    Args:
        classifier: Classifier applied to every enumerated file
        worker_count: Maximum files analysed concurrently
        pass_timeout: Seconds before the remainder of a pass is abandoned
        exclude_paths: Roots never descended into (e.g. the quarantine dir)
        token: Shared cancellation token
    """

    def __init__(
        self,
        classifier: ThreatClassifier,
        worker_count: int = 1,
        pass_timeout: float = 120.0,
        exclude_paths: Sequence[str] = (),
        token: Optional[CancellationToken] = None,
    ):
        self.classifier = classifier
        self.worker_count = max(1, worker_count)
        self.pass_timeout = pass_timeout
        self.exclude_paths = tuple(exclude_paths)
        self.token = token or CancellationToken()

    def iter_files(self, roots: Iterable[str], recursive: bool = False) -> Iterator[str]:
        """Yield regular files under ``roots`` in a stable (sorted) order."""
        for root in roots:
            if self.token.is_cancelled:
                return
            if os.path.isfile(root):
                yield root
                continue
            if not os.path.isdir(root):
                logger.warning("Scan path does not exist: %s", root)
                continue
            yield from self._walk(root, recursive)

    def _walk(self, directory: str, recursive: bool) -> Iterator[str]:
        if self.exclude_paths and is_under(directory, self.exclude_paths):
            return
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as exc:
            logger.debug("Cannot list %s: %s", directory, exc)
            return

        subdirs = []
        for entry in entries:
            if self.token.is_cancelled:
                return
            try:
                if entry.is_file(follow_symlinks=False):
                    yield entry.path
                elif recursive and entry.is_dir(follow_symlinks=False):
                    subdirs.append(entry.path)
            except OSError as exc:
                logger.debug("Cannot stat %s: %s", entry.path, exc)

        for subdir in subdirs:
            yield from self._walk(subdir, recursive)

    def _classify(self, path: str) -> Optional[ScanResult]:
        if self.token.is_cancelled:
            return None
        return self.classifier.classify_path(path)

    def scan(self, roots: Iterable[str], recursive: bool = False) -> List[ScanResult]:
        """
        Classify every file under ``roots``.

        Returns:
            ScanResults in file-enumeration order; files without rule hits
            and files that could not be read are absent.
        """
        paths = list(self.iter_files(roots, recursive))
        if not paths:
            return []

        executor = ThreadPoolExecutor(
            max_workers=self.worker_count, thread_name_prefix="filkollen-scan",
        )
        try:
            futures = [executor.submit(self._classify, path) for path in paths]
            done, not_done = wait(futures, timeout=self.pass_timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if not_done:
            logger.warning(
                "Directory pass timed out after %.0fs: %d of %d files were skipped",
                self.pass_timeout, len(not_done), len(paths),
            )

        results: List[ScanResult] = []
        for path, future in zip(paths, futures):
            if future not in done or future.cancelled():
                continue
            exc = future.exception()
            if exc is not None:
                logger.warning("Failed to classify %s: %s", path, exc)
                continue
            result = future.result()
            if result is not None:
                results.append(result)
        return results
