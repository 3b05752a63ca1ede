"""
E-paper image pipeline: bitmap -> packed 1-bit buffer -> ordered chunks.

Panel: 200x144 pixels, 1 bit per pixel. Pixels are packed column by column,
8 vertically adjacent pixels per byte with the MSB holding the topmost pixel,
giving exactly 3600 bytes per image.

Polarity: a pixel at or below the threshold is ink and sets its bit, so an
all-white bitmap packs to all 0x00 and an all-black one to all 0xFF.

Pure Python (PIL + numpy).
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Union

import numpy as np
from PIL import Image as PILImage
from PIL import ImageOps

from .errors import InvalidArgumentError

logger = logging.getLogger(__name__)

DISPLAY_WIDTH = 200
DISPLAY_HEIGHT = 144
BYTES_PER_IMAGE = DISPLAY_WIDTH * DISPLAY_HEIGHT // 8  # 3600
MAX_CHUNK_SIZE = 1000
DEFAULT_THRESHOLD = 127

# Larger sources are rejected before decoding
MAX_SOURCE_PIXELS = 4096 * 4096


@dataclass(frozen=True)
class ImageBuffer:
    """Packed display image, exactly BYTES_PER_IMAGE bytes."""
    data: bytes

    def __post_init__(self):
        if len(self.data) != BYTES_PER_IMAGE:
            raise InvalidArgumentError(
                f"Image data must be exactly {BYTES_PER_IMAGE} bytes (got {len(self.data)})"
            )
        object.__setattr__(self, "data", bytes(self.data))

    def __len__(self) -> int:
        return len(self.data)

    def chunks(self, max_chunk_bytes: int = MAX_CHUNK_SIZE) -> List[bytes]:
        return chunk(self.data, max_chunk_bytes)


def _as_uint8(pixels: Any) -> np.ndarray:
    if isinstance(pixels, (bytes, bytearray, memoryview)):
        return np.frombuffer(bytes(pixels), dtype=np.uint8)
    return np.asarray(pixels, dtype=np.uint8).ravel()


def pack_pixels(pixels: Any, width: int, height: int, threshold: int = DEFAULT_THRESHOLD) -> bytes:
    """
    Pack an 8-bit grayscale bitmap to vertical 1-bit bytes.

    Args:
        pixels: Row-major grayscale values (bytes or array-like), width*height long
        width: Bitmap width
        height: Bitmap height, a multiple of 8
        threshold: Values <= threshold become ink (bit set)

    Returns:
        width*height/8 bytes; for each column x, rows top to bottom in groups of 8
    """
    if height % 8:
        raise InvalidArgumentError(f"Height must be a multiple of 8, got {height}")
    arr = _as_uint8(pixels)
    if arr.size != width * height:
        raise InvalidArgumentError(
            f"Bitmap has {arr.size} pixels, expected {width}x{height}={width * height}"
        )
    ink = arr.reshape(height, width) <= threshold
    # Transposed: one row per column, packbits puts the first (top) pixel in the MSB
    return np.packbits(ink.T, axis=1).tobytes()


def normalize(image: PILImage.Image) -> PILImage.Image:
    """Flatten to 8-bit grayscale and fit into the panel, letterboxed with white."""
    if image.mode in ("RGBA", "LA", "P"):
        image = image.convert("RGBA")
        background = PILImage.new("RGBA", image.size, (255, 255, 255, 255))
        image = PILImage.alpha_composite(background, image)
    image = image.convert("L")

    if image.size != (DISPLAY_WIDTH, DISPLAY_HEIGHT):
        logger.debug(f"Resampling {image.size[0]}x{image.size[1]} to {DISPLAY_WIDTH}x{DISPLAY_HEIGHT}")
        image = ImageOps.pad(
            image,
            (DISPLAY_WIDTH, DISPLAY_HEIGHT),
            method=PILImage.Resampling.BICUBIC,
            color=255,
        )
    return image


def pack(pixels: Any, width: int, height: int, threshold: int = DEFAULT_THRESHOLD) -> ImageBuffer:
    """
    Pack a grayscale bitmap of any size into a display buffer.

    Bitmaps that are not 200x144 are resampled to the panel first.
    """
    if width <= 0 or height <= 0:
        raise InvalidArgumentError(f"Invalid bitmap size {width}x{height}")
    if (width, height) != (DISPLAY_WIDTH, DISPLAY_HEIGHT):
        data = _as_uint8(pixels).tobytes()
        if len(data) != width * height:
            raise InvalidArgumentError(
                f"Bitmap has {len(data)} pixels, expected {width}x{height}={width * height}"
            )
        image = normalize(PILImage.frombytes("L", (width, height), data))
        pixels = image.tobytes()
    return ImageBuffer(pack_pixels(pixels, DISPLAY_WIDTH, DISPLAY_HEIGHT, threshold))


def _check_source_size(image: PILImage.Image):
    width, height = image.size
    if width * height > MAX_SOURCE_PIXELS:
        raise InvalidArgumentError(
            f"Source image {width}x{height} exceeds {MAX_SOURCE_PIXELS} pixels"
        )


def load_image(source: Union[str, Path, PILImage.Image], threshold: int = DEFAULT_THRESHOLD) -> ImageBuffer:
    """
    Load a PNG/BMP/JPEG file (or a PIL image) as a display buffer.

    Sources larger than MAX_SOURCE_PIXELS are refused before any pixel data
    is decoded. Pillow's own process-wide limit is left untouched.

    Args:
        source: File path or PIL Image
        threshold: Ink threshold

    Returns:
        Packed ImageBuffer
    """
    if isinstance(source, PILImage.Image):
        _check_source_size(source)
        image = normalize(source)
    else:
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"Image file not found: {path}")
        with PILImage.open(path) as src:
            _check_source_size(src)
            src.load()
            image = normalize(src)
    return ImageBuffer(pack_pixels(image.tobytes(), DISPLAY_WIDTH, DISPLAY_HEIGHT, threshold))



def chunk(buffer: bytes, max_chunk_bytes: int = MAX_CHUNK_SIZE) -> List[bytes]:
    """Split a buffer into ordered slices; the last one may be shorter."""
    if max_chunk_bytes <= 0:
        raise InvalidArgumentError(f"Chunk size must be positive, got {max_chunk_bytes}")
    data = bytes(buffer)
    return [data[offset:offset + max_chunk_bytes] for offset in range(0, len(data), max_chunk_bytes)]


def blank_image() -> ImageBuffer:
    """All-white panel."""
    return ImageBuffer(bytes(BYTES_PER_IMAGE))


def stripe_pattern() -> ImageBuffer:
    """Diagonal stripes, 8 pixels wide."""
    y, x = np.mgrid[0:DISPLAY_HEIGHT, 0:DISPLAY_WIDTH]
    pixels = np.where(((x + y) // 8) % 2 == 0, 240, 40).astype(np.uint8)
    return ImageBuffer(pack_pixels(pixels.tobytes(), DISPLAY_WIDTH, DISPLAY_HEIGHT))
