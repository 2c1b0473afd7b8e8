"""
Video provider: dimensions, duration and PNG snapshots.

Shells out to ffprobe/ffmpeg. When either tool is missing the provider
reports itself unavailable and the orchestrator skips it.
"""

import json
import logging
import os
import shutil
import subprocess
import tempfile
from typing import FrozenSet, List, Optional, Tuple
from urllib.parse import urlparse

from ..config import get_config, StoreConfig
from ..models import FeatureRecord, LoadedResource, ValueKind
from .base import ThreadedProvider


logger = logging.getLogger(__name__)


# Snapshot positions as percentages of the duration
SNAPSHOT_PERCENTS = tuple(range(0, 100, 10))


class VideoProvider(ThreadedProvider):
    """Probes video streams and grabs frames with ffmpeg."""

    def __init__(self, config: StoreConfig | None = None, executor=None):
        super().__init__(executor)
        self.config = config or get_config()

    @property
    def name(self) -> str:
        return "video"

    @property
    def media_types(self) -> List[str]:
        return ["video/*"]

    @property
    def feature_keys(self) -> List[str]:
        return ["video.dimensions", "video.duration", "video.snapshot_*"]

    def is_available(self) -> bool:
        return (
            shutil.which(self.config.ffprobe_path) is not None
            and shutil.which(self.config.ffmpeg_path) is not None
        )

    def extract_sync(
        self,
        content: bytes,
        media_type: str,
        ttl: int,
        keys: Optional[FrozenSet[str]],
        resource: Optional[LoadedResource],
    ) -> List[FeatureRecord]:
        # ffmpeg needs a seekable file; URL resources only exist in memory
        suffix = os.path.splitext(urlparse(resource.url).path)[1] if resource else ""
        with tempfile.NamedTemporaryFile(suffix=suffix or ".video", delete=False) as tmp:
            tmp.write(content)
            video_path = tmp.name

        try:
            width, height, duration = self._probe(video_path)
            records: List[FeatureRecord] = []

            if self.wants("video.dimensions", keys):
                records.append(FeatureRecord(
                    key="video.dimensions",
                    value={"width": width, "height": height},
                    kind=ValueKind.JSON,
                    ttl=ttl,
                ))

            if self.wants("video.duration", keys):
                records.append(FeatureRecord(
                    key="video.duration",
                    value=duration,
                    kind=ValueKind.NUMBER,
                    ttl=ttl,
                    metadata={"unit": "seconds"},
                ))

            for percent in SNAPSHOT_PERCENTS:
                key = f"video.snapshot_{percent}"
                if not self.wants(key, keys):
                    continue
                timestamp = duration * percent / 100.0
                frame = self._snapshot(video_path, timestamp)
                if frame is None:
                    logger.warning(f"No frame at {timestamp:.2f}s in {video_path}")
                    continue
                records.append(FeatureRecord(
                    key=key,
                    value=frame,
                    kind=ValueKind.BINARY,
                    ttl=ttl,
                    metadata={
                        "timestamp": round(timestamp, 3),
                        "percent": percent,
                        "format": "png",
                    },
                ))

            return records
        finally:
            os.unlink(video_path)

    def _probe(self, video_path: str) -> Tuple[int, int, float]:
        """Width, height and duration of the first video stream."""
        result = subprocess.run(
            [
                self.config.ffprobe_path, "-v", "error",
                "-select_streams", "v:0",
                "-show_entries", "stream=width,height:format=duration",
                "-of", "json", video_path,
            ],
            capture_output=True,
            text=True,
            timeout=30,
        )
        if result.returncode != 0:
            raise RuntimeError(f"ffprobe failed: {result.stderr.strip()}")

        info = json.loads(result.stdout or "{}")
        streams = info.get("streams") or []
        if not streams:
            raise RuntimeError("No video stream found")

        duration = float(info.get("format", {}).get("duration") or 0.0)
        return int(streams[0]["width"]), int(streams[0]["height"]), duration

    def _snapshot(self, video_path: str, timestamp: float) -> Optional[bytes]:
        """One PNG frame scaled to config.snapshot_width."""
        try:
            result = subprocess.run(
                [
                    self.config.ffmpeg_path, "-v", "error",
                    "-ss", f"{timestamp:.3f}",
                    "-i", video_path,
                    "-frames:v", "1",
                    "-vf", f"scale={self.config.snapshot_width}:-2",
                    "-f", "image2pipe", "-vcodec", "png", "-",
                ],
                capture_output=True,
                timeout=60,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"ffmpeg timeout at {timestamp:.2f}s")
            return None

        if result.returncode != 0 or not result.stdout:
            logger.debug(f"ffmpeg failed: {result.stderr.decode('utf-8', errors='replace')}")
            return None
        return result.stdout
