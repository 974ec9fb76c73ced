"""Image preprocessing pipeline.

Handles decoding of uploaded bytes (with EXIF orientation), square center
cropping, resizing, and conversion to the normalized tensor layout the
classifier expects. Also encodes frames back to JPEG for display.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING, Literal

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

TensorLayout = Literal["nchw", "nhwc"]


def decode_image(image_bytes: bytes) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow understands).

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        ValueError: If the bytes cannot be decoded as an image.
    """
    if not image_bytes:
        raise ValueError("Empty image data")
    try:
        with io.BytesIO(image_bytes) as buffer, Image.open(buffer) as img:
            oriented = ImageOps.exif_transpose(img)
            return np.array(oriented.convert("RGB"), dtype=np.uint8)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc


def crop_to_square(image: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """Center-crop an HxWxC image to its shorter side."""
    height, width = image.shape[:2]
    side = min(height, width)
    top = (height - side) // 2
    left = (width - side) // 2
    return image[top : top + side, left : left + side]


def resize(image: NDArray[np.uint8], width: int, height: int) -> NDArray[np.uint8]:
    """Resize an RGB image with bilinear filtering."""
    if image.shape[1] == width and image.shape[0] == height:
        return image
    resized = Image.fromarray(image).resize((width, height), Image.Resampling.BILINEAR)
    return np.asarray(resized, dtype=np.uint8)


def preprocess_for_classification(
    image: NDArray[np.uint8],
    size: int,
    layout: TensorLayout = "nhwc",
) -> NDArray[np.float32]:
    """Prepare an image for the classifier.

    The image is center-cropped to a square, resized to ``size`` x ``size``
    and scaled from [0, 255] to [-1, 1].

    Args:
        image: HxWx3 RGB uint8 array.
        size: Model input edge length in pixels.
        layout: Tensor layout of the model input.

    Returns:
        A float32 batch of one image, shape (1, size, size, 3) or (1, 3, size, size).
    """
    if image.ndim != 3 or image.shape[2] != 3:
        raise ValueError(f"Expected an HxWx3 image, got shape {image.shape}")

    square = resize(crop_to_square(image), size, size)
    tensor = square.astype(np.float32) / 127.5 - 1.0
    if layout == "nchw":
        tensor = np.transpose(tensor, (2, 0, 1))
    return np.expand_dims(tensor, axis=0)


def encode_jpeg(image: NDArray[np.uint8], quality: int = 85) -> bytes:
    """Encode an RGB uint8 array as JPEG bytes."""
    with io.BytesIO() as buffer:
        Image.fromarray(image).save(buffer, format="JPEG", quality=quality)
        return buffer.getvalue()
