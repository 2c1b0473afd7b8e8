"""
Directory provider: entry counts, sizes, extension breakdown and largest files.

Only looks at the directory's immediate entries; recursive work belongs to
the indexer.
"""

import logging
import os
from collections import Counter
from pathlib import Path
from typing import FrozenSet, List, Optional

from ..config import get_config, StoreConfig
from ..models import FeatureRecord, LoadedResource, ValueKind
from ..modes import DIRECTORY_MEDIA_TYPE
from .base import ThreadedProvider


logger = logging.getLogger(__name__)

LARGEST_FILES = 10


def format_file_size(size: int) -> str:
    """Human readable size, e.g. 1536 -> '1.5 KB'."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} B" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


class DirectoryProvider(ThreadedProvider):
    """Summarizes the immediate contents of a directory."""

    def __init__(self, config: StoreConfig | None = None, executor=None):
        super().__init__(executor)
        self.config = config or get_config()

    @property
    def name(self) -> str:
        return "directory"

    @property
    def media_types(self) -> List[str]:
        return [DIRECTORY_MEDIA_TYPE]

    @property
    def feature_keys(self) -> List[str]:
        return [
            "directory.file_count", "directory.subdirectory_count", "directory.total_size",
            "directory.metadata", "directory.extensions", "directory.largest_files",
        ]

    def extract_sync(
        self,
        content: bytes,
        media_type: str,
        ttl: int,
        keys: Optional[FrozenSet[str]],
        resource: Optional[LoadedResource],
    ) -> List[FeatureRecord]:
        if resource is None or resource.path is None:
            raise ValueError("Directory provider needs a local directory resource")

        directory = resource.path
        files: List[dict] = []
        subdirectories: List[str] = []

        with os.scandir(directory) as entries:
            for entry in entries:
                try:
                    if entry.is_dir(follow_symlinks=False):
                        subdirectories.append(entry.name)
                    elif entry.is_file(follow_symlinks=False):
                        files.append({
                            "name": entry.name,
                            "size": entry.stat(follow_symlinks=False).st_size,
                            "extension": Path(entry.name).suffix.lower(),
                        })
                except OSError as e:
                    logger.debug(f"Skipping {entry.path}: {e}")

        total_size = sum(f["size"] for f in files)
        records: List[FeatureRecord] = []

        if self.wants("directory.file_count", keys):
            records.append(FeatureRecord(
                key="directory.file_count", value=len(files), kind=ValueKind.NUMBER, ttl=ttl,
            ))

        if self.wants("directory.subdirectory_count", keys):
            records.append(FeatureRecord(
                key="directory.subdirectory_count", value=len(subdirectories),
                kind=ValueKind.NUMBER, ttl=ttl,
            ))

        if self.wants("directory.total_size", keys):
            records.append(FeatureRecord(
                key="directory.total_size",
                value=total_size,
                kind=ValueKind.NUMBER,
                ttl=ttl,
                metadata={"formatted": format_file_size(total_size)},
            ))

        if self.wants("directory.metadata", keys):
            records.append(FeatureRecord(
                key="directory.metadata",
                value={
                    "name": directory.name,
                    "path": str(directory),
                    "file_count": len(files),
                    "subdirectory_count": len(subdirectories),
                    "total_size": total_size,
                    "average_file_size": total_size // len(files) if files else 0,
                    "files": sorted(f["name"] for f in files),
                    "subdirectories": sorted(subdirectories),
                },
                kind=ValueKind.JSON,
                ttl=ttl,
            ))

        if self.wants("directory.extensions", keys):
            counts = Counter(f["extension"] or "(none)" for f in files)
            records.append(FeatureRecord(
                key="directory.extensions",
                value=dict(counts.most_common()),
                kind=ValueKind.JSON,
                ttl=ttl,
            ))

        if self.wants("directory.largest_files", keys):
            largest = sorted(files, key=lambda f: (-f["size"], f["name"]))[:LARGEST_FILES]
            records.append(FeatureRecord(
                key="directory.largest_files",
                value=[
                    {
                        "name": f["name"],
                        "size": f["size"],
                        "size_formatted": format_file_size(f["size"]),
                    }
                    for f in largest
                ],
                kind=ValueKind.JSON,
                ttl=ttl,
            ))

        return records
