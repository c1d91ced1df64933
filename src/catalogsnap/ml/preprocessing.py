"""Image preprocessing for the product classifier.

Decoding, orientation, center crop and conversion to a normalized NCHW
float32 tensor. All functions are synchronous and meant to run on the
inference thread pool.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from catalogsnap.errors import DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from catalogsnap.ml.image_classifier import Orientation

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)

# Keyed by Orientation value; same mapping as EXIF tags 1-8.
_TRANSPOSES: dict[str, Image.Transpose | None] = {
    "up": None,
    "up_mirrored": Image.Transpose.FLIP_LEFT_RIGHT,
    "down": Image.Transpose.ROTATE_180,
    "down_mirrored": Image.Transpose.FLIP_TOP_BOTTOM,
    "left_mirrored": Image.Transpose.TRANSPOSE,
    "right": Image.Transpose.ROTATE_270,
    "right_mirrored": Image.Transpose.TRANSVERSE,
    "left": Image.Transpose.ROTATE_90,
}


def decode_image(image_bytes: bytes, max_pixels: int) -> Image.Image:
    """Decode raw image bytes into an RGB Pillow image.

    Raises:
        DecodeError: If the bytes are empty, not an image, or exceed ``max_pixels``.
    """
    if not image_bytes:
        raise DecodeError("Empty image payload", stage="decode")

    try:
        image = Image.open(io.BytesIO(image_bytes))
        width, height = image.size
        if width * height == 0:
            raise DecodeError("Image has no pixels", stage="decode")
        if width * height > max_pixels:
            raise DecodeError(
                f"Image is {width}x{height}, exceeds limit of {max_pixels} pixels",
                stage="decode",
            )
        image.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Cannot decode image: {exc}", stage="decode", cause=exc) from exc

    if image.mode != "RGB":
        image = image.convert("RGB")
    return image


def apply_orientation(image: Image.Image, orientation: Orientation) -> Image.Image:
    """Rotate/mirror an image so that it is upright.

    The tag is trusted as given; a wrong tag yields a wrongly oriented image.
    """
    method = _TRANSPOSES[str(orientation)]
    if method is None:
        return image
    return image.transpose(method)


def center_crop(image: Image.Image, size: int) -> Image.Image:
    """Crop the centered square and scale it to ``size`` x ``size``.

    Cropping first keeps the resize buffer at ``size**2`` pixels whatever
    the aspect ratio of the input.
    """
    return ImageOps.fit(image, (size, size), Image.Resampling.BILINEAR)


def to_model_input(image: Image.Image) -> NDArray[np.float32]:
    """Convert an RGB image to a 1x3xHxW ImageNet-normalized tensor."""
    array = np.asarray(image, dtype=np.float32) / 255.0
    array = (array - IMAGENET_MEAN) / IMAGENET_STD
    return np.ascontiguousarray(array.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)


def preprocess_for_classification(
    image_bytes: bytes,
    orientation: Orientation,
    size: int,
    max_pixels: int,
) -> NDArray[np.float32]:
    """Run the full decode -> orient -> crop -> tensor chain."""
    image = decode_image(image_bytes, max_pixels)
    image = apply_orientation(image, orientation)
    image = center_crop(image, size)
    return to_model_input(image)
