"""
Image decoding, re-encoding and colour analysis.

Rasters are Pillow images in RGBA mode. Everything here is pure and
in-memory so it can run on an executor thread.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from io import BytesIO
from typing import List, Optional, Tuple

import numpy as np
from PIL import Image, ImageCms, ImageOps, UnidentifiedImageError
from sklearn.cluster import KMeans

from errors import CorruptData, ProcessingError, UnsupportedFormat

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = {"JPEG", "PNG", "WEBP"}
ENCODABLE_FORMATS = {"JPEG", "PNG", "WEBP"}
CONTENT_TYPES = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}
EXTENSIONS = {"JPEG": ".jpg", "PNG": ".png", "WEBP": ".webp"}

Raster = Image.Image


@dataclass(frozen=True)
class Palette:
    """Dominant colour plus secondary colours ordered by pixel share."""

    dominant: str
    palette: List[str] = field(default_factory=list)

    @property
    def colors(self) -> List[str]:
        return [self.dominant] + list(self.palette)


def rgb_to_hex(rgb) -> str:
    r, g, b = (int(np.clip(round(float(c)), 0, 255)) for c in rgb)
    return f"#{r:02x}{g:02x}{b:02x}"


def normalize_format(target_format: str) -> str:
    fmt = target_format.upper()
    if fmt == "JPG":
        fmt = "JPEG"
    if fmt not in ENCODABLE_FORMATS:
        raise ProcessingError(f"Unsupported target format: {target_format}")
    return fmt


def fit_within(size: Tuple[int, int], max_dimension: int) -> Tuple[int, int]:
    """Scale (width, height) so the longer edge is at most max_dimension. Never upsizes."""
    if max_dimension < 1:
        raise ValueError("max_dimension must be positive")
    width, height = size
    longest = max(width, height)
    if longest <= max_dimension:
        return width, height
    ratio = max_dimension / longest
    return (
        max(1, min(max_dimension, round(width * ratio))),
        max(1, min(max_dimension, round(height * ratio))),
    )


class ImageCodec(ABC):
    """Capability interface for decoding, encoding and palette extraction."""

    @abstractmethod
    def decode(self, data: bytes) -> Raster:
        pass

    @abstractmethod
    def encode(self, raster: Raster, target_format: str, max_dimension: int,
               quality: Optional[int] = None) -> bytes:
        pass

    @abstractmethod
    def extract_palette(self, raster: Raster, palette_size: int) -> Palette:
        pass

    @abstractmethod
    def read_info(self, data: bytes) -> Tuple[str, int, int]:
        """Return (format, width, height) without a full decode."""


class PillowCodec(ImageCodec):
    def __init__(self, sample_edge: int = 100, fallback_color: str = "#cccccc"):
        self.sample_edge = sample_edge
        self.fallback_color = fallback_color
        self._srgb = ImageCms.createProfile("sRGB")

    def read_info(self, data: bytes) -> Tuple[str, int, int]:
        image = self._open(data)
        return image.format, image.width, image.height

    def _open(self, data: bytes) -> Image.Image:
        try:
            image = Image.open(BytesIO(data))
        except UnidentifiedImageError as e:
            raise UnsupportedFormat("Byte signature does not match a supported image format") from e
        except Image.DecompressionBombError as e:
            raise CorruptData(str(e)) from e
        if image.format not in SUPPORTED_FORMATS:
            raise UnsupportedFormat(f"Unsupported image format: {image.format}")
        return image

    def decode(self, data: bytes) -> Raster:
        image = self._open(data)
        try:
            image.load()
        except (OSError, SyntaxError, ValueError) as e:
            raise CorruptData(f"Image data is corrupt: {e}") from e

        icc_profile = image.info.get("icc_profile")
        image = ImageOps.exif_transpose(image)

        has_alpha = image.mode in ("RGBA", "LA", "PA") or (image.mode == "P" and "transparency" in image.info)
        alpha = image.convert("RGBA").getchannel("A") if has_alpha else None
        rgb = image.convert("RGB")

        if icc_profile:
            try:
                source_profile = ImageCms.ImageCmsProfile(BytesIO(icc_profile))
                rgb = ImageCms.profileToProfile(rgb, source_profile, self._srgb, outputMode="RGB")
            except (ImageCms.PyCMSError, OSError) as e:
                logger.warning(f"Skipping colour profile conversion: {e}")

        raster = rgb.convert("RGBA")
        if alpha is not None:
            raster.putalpha(alpha)
        return raster

    def encode(self, raster: Raster, target_format: str, max_dimension: int,
               quality: Optional[int] = None) -> bytes:
        fmt = normalize_format(target_format)
        size = fit_within(raster.size, max_dimension)
        try:
            image = raster if size == raster.size else raster.resize(size, Image.LANCZOS)
            params = {}
            if fmt == "JPEG":
                # JPEG has no alpha; flatten onto white
                background = Image.new("RGB", image.size, (255, 255, 255))
                background.paste(image, mask=image.getchannel("A") if image.mode == "RGBA" else None)
                image = background
                params["quality"] = quality or 85
                params["optimize"] = True
            elif fmt == "WEBP":
                params["quality"] = quality or 80
            else:
                params["optimize"] = True

            buffer = BytesIO()
            image.save(buffer, format=fmt, **params)
            return buffer.getvalue()
        except (OSError, ValueError) as e:
            raise ProcessingError(f"Could not encode {fmt} image: {e}") from e

    def extract_palette(self, raster: Raster, palette_size: int) -> Palette:
        if palette_size < 1:
            raise ValueError("palette_size must be at least 1")

        sample = raster.convert("RGBA")
        # Nearest-neighbour keeps edge pixels from blending with transparency
        sample.thumbnail((self.sample_edge, self.sample_edge), Image.NEAREST)

        np_image = np.array(sample)
        rgb_pixels = np_image[..., :3]
        alpha = np_image[..., 3]
        rgb_pixels = rgb_pixels[alpha > 0]

        if len(rgb_pixels) == 0:
            return Palette(dominant=self.fallback_color, palette=[])

        unique_colors = np.unique(rgb_pixels, axis=0)
        k = min(palette_size, len(unique_colors))

        kmeans = KMeans(n_clusters=k, n_init=1, max_iter=100, random_state=42)
        labels = kmeans.fit_predict(rgb_pixels.astype(np.float64))
        counts = np.bincount(labels, minlength=k)
        order = sorted(range(k), key=lambda i: (-counts[i], i))

        colors: List[str] = []
        for index in order:
            if counts[index] == 0:
                continue
            hex_color = rgb_to_hex(kmeans.cluster_centers_[index])
            if hex_color not in colors:
                colors.append(hex_color)

        return Palette(dominant=colors[0], palette=colors[1:])
