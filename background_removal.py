"""
Background removal backends.

Every backend takes an RGBA raster and returns an RGBA raster of the same
size with background pixels fully transparent. Backends that need an ML
model load it lazily on first use (or on warm-up).
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np
from PIL import Image, ImageDraw

from config import APIConfig
from errors import ProcessingError

logger = logging.getLogger(__name__)


class BackgroundRemover(ABC):
    """Capability interface for foreground/background classification."""

    name = "base"

    def remove_background(self, raster: Image.Image) -> Image.Image:
        start = time.time()
        try:
            result = self._remove(raster.convert("RGBA"))
        except ProcessingError:
            raise
        except Exception as e:
            raise ProcessingError(f"{self.name} background removal failed: {e}") from e

        if result.size != raster.size:
            raise ProcessingError(
                f"{self.name} returned {result.size[0]}x{result.size[1]}, expected {raster.size[0]}x{raster.size[1]}"
            )
        logger.info(f"⏱️ Background removal ({self.name}) completed in {time.time() - start:.2f}s")
        return result.convert("RGBA")

    @abstractmethod
    def _remove(self, raster: Image.Image) -> Image.Image:
        pass

    def warm_up(self) -> None:
        """Load any model weights ahead of the first job."""

    @property
    def is_loaded(self) -> bool:
        return True


class RembgBackgroundRemover(BackgroundRemover):
    """U2-Net family models via rembg (onnxruntime)."""

    name = "rembg"

    def __init__(self, model_name: str = "u2net"):
        self.model_name = model_name
        self._session = None
        self._lock = threading.Lock()

    def _get_session(self):
        with self._lock:
            if self._session is None:
                from rembg import new_session

                logger.info(f"Loading rembg session '{self.model_name}'...")
                self._session = new_session(self.model_name)
            return self._session

    def warm_up(self) -> None:
        self._get_session()

    @property
    def is_loaded(self) -> bool:
        return self._session is not None

    def _remove(self, raster: Image.Image) -> Image.Image:
        from rembg import remove

        return remove(raster, session=self._get_session())


class SegformerBackgroundRemover(BackgroundRemover):
    """Keeps only garment classes of a Segformer clothes segmentation model."""

    name = "segformer"

    # Clothing labels mapping of mattmdjaga/segformer_b2_clothes
    labels = {
        0: "Background",
        1: "Hat",
        2: "Hair",
        3: "Sunglasses",
        4: "Upper-clothes",
        5: "Skirt",
        6: "Pants",
        7: "Dress",
        8: "Belt",
        9: "Left-shoe",
        10: "Right-shoe",
        11: "Face",
        12: "Left-leg",
        13: "Right-leg",
        14: "Left-arm",
        15: "Right-arm",
        16: "Bag",
        17: "Scarf",
    }

    # Exclude body parts and background
    clothing_classes = [1, 3, 4, 5, 6, 7, 8, 9, 10, 16, 17]

    def __init__(self, model_name: str = "mattmdjaga/segformer_b2_clothes", num_threads: int = 4):
        self.model_name = model_name
        self.num_threads = num_threads
        self.processor = None
        self.model = None
        self._lock = threading.Lock()

    def _load(self):
        with self._lock:
            if self.model is not None:
                return
            import torch
            from transformers import AutoModelForSemanticSegmentation, SegformerImageProcessor

            logger.info(f"Loading Segformer model '{self.model_name}'...")
            self.processor = SegformerImageProcessor.from_pretrained(self.model_name)
            model = AutoModelForSemanticSegmentation.from_pretrained(
                self.model_name,
                torch_dtype=torch.float32,
                low_cpu_mem_usage=True,
            )
            model.to(torch.device("cpu"))
            model.eval()
            torch.set_num_threads(self.num_threads)
            self.model = model
            logger.info("Segformer model loaded (CPU)")

    def warm_up(self) -> None:
        self._load()

    @property
    def is_loaded(self) -> bool:
        return self.model is not None

    def _segment(self, image: Image.Image) -> np.ndarray:
        import torch
        import torch.nn.functional as F

        self._load()
        inputs = self.processor(images=image.convert("RGB"), return_tensors="pt")
        with torch.no_grad():
            outputs = self.model(**inputs)
        logits = outputs.logits
        if logits.dim() == 3:
            logits = logits.unsqueeze(0)
        # Upsample logits to original image size, (height, width)
        upsampled = F.interpolate(logits, size=(image.height, image.width), mode="bilinear", align_corners=False)
        return upsampled.argmax(dim=1)[0].cpu().numpy()

    def _remove(self, raster: Image.Image) -> Image.Image:
        pred_seg = self._segment(raster)
        garment_mask = np.isin(pred_seg, self.clothing_classes)
        if not garment_mask.any():
            raise ProcessingError("No garment detected in image")

        np_image = np.array(raster)
        np_image[..., 3] = np.where(garment_mask, np_image[..., 3], 0)
        return Image.fromarray(np_image, "RGBA")


class BorderColorBackgroundRemover(BackgroundRemover):
    """
    Model-free removal for studio shots on a plain backdrop.

    Estimates the backdrop colour from the image border and clears every
    pixel within `tolerance` of it that is connected to the border.
    """

    name = "border"

    def __init__(self, tolerance: float = 40.0, work_edge: int = 256):
        self.tolerance = tolerance
        self.work_edge = work_edge

    @staticmethod
    def _border_pixels(width: int, height: int) -> List[tuple]:
        points = [(x, 0) for x in range(width)] + [(x, height - 1) for x in range(width)]
        points += [(0, y) for y in range(height)] + [(width - 1, y) for y in range(height)]
        return points

    def _near_backdrop(self, rgb: np.ndarray, backdrop: np.ndarray) -> np.ndarray:
        squared = ((rgb - backdrop) ** 2).sum(axis=2)
        return squared <= self.tolerance ** 2

    def _remove(self, raster: Image.Image) -> Image.Image:
        np_image = np.array(raster)
        rgb = np_image[..., :3].astype(np.int32)
        border = np.concatenate([rgb[0], rgb[-1], rgb[:, 0], rgb[:, -1]])
        backdrop = np.median(border, axis=0).astype(np.int32)

        # Flood fill on a reduced copy, ImageDraw.floodfill walks pixels one by one
        work = raster.copy()
        work.thumbnail((self.work_edge, self.work_edge), Image.NEAREST)
        work_rgb = np.array(work)[..., :3].astype(np.int32)
        candidate = Image.fromarray(np.where(self._near_backdrop(work_rgb, backdrop), 255, 0).astype(np.uint8), "L")

        # Only backdrop connected to the border is removed
        for point in self._border_pixels(work.width, work.height):
            if candidate.getpixel(point) == 255:
                ImageDraw.floodfill(candidate, point, 128, thresh=0)

        connected = candidate.point(lambda v: 255 if v == 128 else 0).resize(raster.size, Image.NEAREST)
        background = (np.array(connected) == 255) & self._near_backdrop(rgb, backdrop)

        np_image[..., 3] = np.where(background, 0, np_image[..., 3])
        return Image.fromarray(np_image, "RGBA")


def create_background_remover(cfg: APIConfig, name: Optional[str] = None) -> BackgroundRemover:
    """Build the backend selected by BACKGROUND_REMOVER."""
    name = (name or cfg.background_remover).lower()
    if name == "rembg":
        return RembgBackgroundRemover(cfg.rembg_model)
    if name == "segformer":
        return SegformerBackgroundRemover(cfg.segformer_model, num_threads=cfg.cpu_threads)
    if name == "border":
        return BorderColorBackgroundRemover()
    raise ValueError(f"Unknown background remover '{name}'")
