"""
Scanner - Directory listing for indexing.

Walks a directory (optionally recursively) and returns the files an
indexing pass should look at, applying skip patterns, an extension
allow-list, the resource size cap and a maximum file count.
"""

import logging
import os
import time
from pathlib import Path
from typing import AsyncGenerator, List, Optional, Set, Tuple

from .config import get_config, StoreConfig
from .errors import ErrorAction, handle_error
from .models import DirectoryListing, FileInfo


logger = logging.getLogger(__name__)


class DirectoryScanner:
    """
    File system scanner for directory indexing.

    Symlinks are never followed, and every directory is visited at most
    once (tracked by device and inode) so cycles cannot loop the walk.
    """

    def __init__(self, config: StoreConfig | None = None):
        self.config = config or get_config()

    async def list_files(
        self,
        root: Path,
        recursive: bool = False,
        extensions: Optional[List[str]] = None,
        max_files: Optional[int] = None,
    ) -> DirectoryListing:
        """
        List files under root.

        Args:
            root: Directory to list
            recursive: Descend into subdirectories
            extensions: Lowercase extension allow-list (None = all)
            max_files: Stop once this many files were accepted

        Returns:
            DirectoryListing; skipped holds oversized files and directories
            that could not be listed
        """
        start_time = time.monotonic()
        files: List[FileInfo] = []
        skipped: List[str] = []
        visited: Set[Tuple[int, int]] = set()
        allowed = set(extensions) if extensions else None

        walk = self._scan_directory(root, recursive, allowed, skipped, visited)
        try:
            async for file_info in walk:
                files.append(file_info)
                if max_files is not None and len(files) >= max_files:
                    break
        finally:
            await walk.aclose()

        duration = time.monotonic() - start_time
        logger.info(f"Listed {len(files)} files under {root} in {duration:.2f}s ({len(skipped)} skipped)")

        return DirectoryListing(files=files, skipped=skipped, duration_seconds=duration)

    async def _scan_directory(
        self,
        directory: Path,
        recursive: bool,
        allowed: Optional[Set[str]],
        skipped: List[str],
        visited: Set[Tuple[int, int]],
    ) -> AsyncGenerator[FileInfo, None]:
        """Files in this directory first (sorted by name), then subdirectories."""
        try:
            stat = directory.stat()
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            if handle_error(e, directory, "list_directory") == ErrorAction.ABORT:
                raise
            skipped.append(str(directory))
            return

        key = (stat.st_dev, stat.st_ino)
        if key in visited:
            logger.debug(f"Already visited {directory}; skipping")
            return
        visited.add(key)

        subdirs: List[Path] = []

        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    if recursive and not self._should_skip_dir(entry.name):
                        subdirs.append(Path(entry.path))
                    continue

                if not entry.is_file(follow_symlinks=False):
                    continue
                if self._should_skip_file(entry.name, allowed):
                    continue

                entry_stat = entry.stat(follow_symlinks=False)
                if entry_stat.st_size > self.config.max_resource_size:
                    logger.info(f"Skipping oversized file {entry.path} ({entry_stat.st_size} bytes)")
                    skipped.append(entry.path)
                    continue

                yield FileInfo.from_path(
                    path=Path(entry.path),
                    mtime=entry_stat.st_mtime,
                    size=entry_stat.st_size,
                )
            except OSError as e:
                if handle_error(e, Path(entry.path), "scan_entry") == ErrorAction.ABORT:
                    raise
                continue

        for subdir in subdirs:
            async for file_info in self._scan_directory(subdir, recursive, allowed, skipped, visited):
                yield file_info

    def _should_skip_dir(self, name: str) -> bool:
        """Check if a directory should be skipped."""
        if name.startswith("."):
            return True
        return name in self.config.skip_dirs

    def _should_skip_file(self, name: str, allowed: Optional[Set[str]]) -> bool:
        """Check if a file should be skipped."""
        if name in self.config.skip_files or name.startswith("."):
            return True
        if allowed is not None and Path(name).suffix.lower() not in allowed:
            return True
        return False
