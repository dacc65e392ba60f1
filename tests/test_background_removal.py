import pytest
from PIL import Image

from background_removal import (
    BackgroundRemover,
    BorderColorBackgroundRemover,
    RembgBackgroundRemover,
    SegformerBackgroundRemover,
    create_background_remover,
)
from config import APIConfig
from errors import ProcessingError


class ExplodingRemover(BackgroundRemover):
    name = "exploding"

    def _remove(self, raster):
        raise RuntimeError("model crashed")


class ShrinkingRemover(BackgroundRemover):
    name = "shrinking"

    def _remove(self, raster):
        return raster.resize((raster.width // 2, raster.height // 2))


def test_border_remover_clears_backdrop_and_keeps_garment():
    raster = Image.new("RGBA", (120, 90), (250, 250, 250, 255))
    raster.paste((30, 30, 160, 255), (30, 20, 90, 70))

    cutout = BorderColorBackgroundRemover().remove_background(raster)
    assert cutout.size == raster.size
    assert cutout.getpixel((0, 0))[3] == 0
    assert cutout.getpixel((119, 89))[3] == 0
    assert cutout.getpixel((60, 45)) == (30, 30, 160, 255)


def test_border_remover_keeps_enclosed_backdrop_colour():
    raster = Image.new("RGBA", (100, 100), (255, 255, 255, 255))
    raster.paste((200, 0, 0, 255), (20, 20, 80, 80))
    raster.paste((255, 255, 255, 255), (40, 40, 60, 60))

    cutout = BorderColorBackgroundRemover().remove_background(raster)
    # White inside the garment is not connected to the border
    assert cutout.getpixel((50, 50))[3] == 255
    assert cutout.getpixel((5, 5))[3] == 0


def test_border_remover_on_large_image_keeps_size():
    raster = Image.new("RGBA", (1200, 900), (255, 255, 255, 255))
    raster.paste((0, 120, 0, 255), (300, 200, 900, 700))

    cutout = BorderColorBackgroundRemover().remove_background(raster)
    assert cutout.size == (1200, 900)
    assert cutout.getpixel((10, 10))[3] == 0
    assert cutout.getpixel((600, 450))[3] == 255


def test_failures_are_wrapped_as_processing_error():
    with pytest.raises(ProcessingError, match="model crashed"):
        ExplodingRemover().remove_background(Image.new("RGBA", (10, 10)))


def test_size_change_is_rejected():
    with pytest.raises(ProcessingError):
        ShrinkingRemover().remove_background(Image.new("RGBA", (10, 10)))


def test_factory_selects_backend():
    cfg = APIConfig()
    assert isinstance(create_background_remover(cfg, "border"), BorderColorBackgroundRemover)
    assert isinstance(create_background_remover(cfg, "rembg"), RembgBackgroundRemover)
    assert isinstance(create_background_remover(cfg, "segformer"), SegformerBackgroundRemover)
    with pytest.raises(ValueError):
        create_background_remover(cfg, "magic")


def test_model_backends_load_lazily():
    assert RembgBackgroundRemover().is_loaded is False
    assert SegformerBackgroundRemover().is_loaded is False
    assert BorderColorBackgroundRemover().is_loaded is True
