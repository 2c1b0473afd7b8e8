"""
Image provider: dimensions, format, PNG thumbnails and channel statistics.

Uses Pillow; thumbnails keep aspect ratio and are never enlarged.
"""

import io
import logging
from typing import FrozenSet, List, Optional, Tuple

from PIL import Image, ImageStat

from ..config import get_config, StoreConfig
from ..models import FeatureRecord, LoadedResource, ValueKind
from .base import ThreadedProvider


logger = logging.getLogger(__name__)


class ImageProvider(ThreadedProvider):
    """Extracts metadata and thumbnails from images."""

    def __init__(self, config: StoreConfig | None = None, executor=None):
        super().__init__(executor)
        self.config = config or get_config()

    @property
    def name(self) -> str:
        return "image"

    @property
    def media_types(self) -> List[str]:
        return ["image/*"]

    @property
    def feature_keys(self) -> List[str]:
        return [
            "image.dimensions", "image.format",
            "image.thumbnail.small", "image.thumbnail.medium", "image.thumbnail.large",
            "image.dominant_colors",
        ]

    def extract_sync(
        self,
        content: bytes,
        media_type: str,
        ttl: int,
        keys: Optional[FrozenSet[str]],
        resource: Optional[LoadedResource],
    ) -> List[FeatureRecord]:
        records: List[FeatureRecord] = []

        with Image.open(io.BytesIO(content)) as img:
            img.load()
            width, height = img.size
            image_format = (img.format or "unknown").lower()

            if self.wants("image.dimensions", keys):
                records.append(FeatureRecord(
                    key="image.dimensions",
                    value={"width": width, "height": height},
                    kind=ValueKind.JSON,
                    ttl=ttl,
                ))

            if self.wants("image.format", keys):
                records.append(FeatureRecord(
                    key="image.format", value=image_format, kind=ValueKind.TEXT, ttl=ttl,
                ))

            thumbnails = {
                "image.thumbnail.small": self.config.thumbnail_small,
                "image.thumbnail.medium": self.config.thumbnail_medium,
                "image.thumbnail.large": self.config.thumbnail_large,
            }
            for key, bounds in thumbnails.items():
                if not self.wants(key, keys):
                    continue
                data, size = self._thumbnail(img, bounds)
                records.append(FeatureRecord(
                    key=key,
                    value=data,
                    kind=ValueKind.BINARY,
                    ttl=ttl,
                    metadata={
                        "dimensions": f"{size[0]}x{size[1]}",
                        "bounds": f"{bounds[0]}x{bounds[1]}",
                        "format": "png",
                    },
                ))

            if self.wants("image.dominant_colors", keys):
                records.append(FeatureRecord(
                    key="image.dominant_colors",
                    value=self._channel_stats(img),
                    kind=ValueKind.JSON,
                    ttl=ttl,
                ))

        logger.debug(f"Extracted {len(records)} image features ({width}x{height} {image_format})")
        return records

    @staticmethod
    def _thumbnail(img: Image.Image, bounds: Tuple[int, int]) -> Tuple[bytes, Tuple[int, int]]:
        """PNG thumbnail fitting inside bounds."""
        thumb = img.copy()
        if thumb.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            thumb = thumb.convert("RGBA")
        thumb.thumbnail(bounds)
        buffer = io.BytesIO()
        thumb.save(buffer, format="PNG")
        return buffer.getvalue(), thumb.size

    @staticmethod
    def _channel_stats(img: Image.Image) -> dict:
        """Per-channel mean/min/max, like a coarse color fingerprint."""
        rgb = img.convert("RGBA" if "A" in img.getbands() else "RGB")
        stat = ImageStat.Stat(rgb)
        return {
            "channels": [
                {
                    "band": band,
                    "mean": round(stat.mean[i]),
                    "min": stat.extrema[i][0],
                    "max": stat.extrema[i][1],
                }
                for i, band in enumerate(rgb.getbands())
            ]
        }
