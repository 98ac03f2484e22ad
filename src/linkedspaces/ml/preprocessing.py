"""Image preprocessing pipeline.

Handles decoding, EXIF orientation, color space conversion, size validation,
and conversion to the normalized NCHW tensor the classification model expects.
"""

from __future__ import annotations

import io
import logging
import warnings
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from linkedspaces.errors import ImageDecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class ImagePreprocessor:
    """Decodes images and prepares them for the classification model."""

    def __init__(self, max_image_pixels: int) -> None:
        self._max_image_pixels = max_image_pixels

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Args:
            image_bytes: Raw file bytes (any format Pillow can read).

        Returns:
            HxWx3 RGB uint8 numpy array.

        Raises:
            ImageDecodeError: If the image cannot be decoded or exceeds size limits.
        """
        if not image_bytes:
            raise ImageDecodeError("Image data is empty")

        try:
            with warnings.catch_warnings():
                warnings.simplefilter("error", Image.DecompressionBombWarning)
                with Image.open(io.BytesIO(image_bytes)) as img:
                    width, height = img.size
                    if width * height > self._max_image_pixels:
                        raise ImageDecodeError(
                            f"Image is {width}x{height}, exceeding the {self._max_image_pixels} pixel limit"
                        )
                    oriented = ImageOps.exif_transpose(img)
                    rgb = oriented.convert("RGB")
        except (
            UnidentifiedImageError,
            OSError,
            ValueError,
            Image.DecompressionBombError,
            Image.DecompressionBombWarning,
        ) as exc:
            raise ImageDecodeError(f"Failed to decode image: {exc}") from exc

        logger.debug("Decoded image %dx%d", rgb.width, rgb.height)
        return np.asarray(rgb, dtype=np.uint8)

    def ensure_rgb(self, image: NDArray[np.generic]) -> NDArray[np.uint8]:
        """Validate an already decoded bitmap and coerce it to HxWx3 RGB uint8.

        Grayscale (HxW) images are expanded and an alpha channel is dropped.

        Raises:
            ImageDecodeError: If the array cannot be interpreted as an image.
        """
        array = np.asarray(image)
        if array.ndim == 2:
            array = np.stack([array] * 3, axis=-1)
        if array.ndim != 3 or array.shape[2] not in (3, 4):
            raise ImageDecodeError(f"Expected an HxWx3 or HxWx4 image, got shape {array.shape}")
        if array.shape[0] == 0 or array.shape[1] == 0:
            raise ImageDecodeError("Image has no pixels")
        if array.shape[0] * array.shape[1] > self._max_image_pixels:
            raise ImageDecodeError(f"Image exceeds the {self._max_image_pixels} pixel limit")
        if array.dtype != np.uint8:
            if not np.issubdtype(array.dtype, np.integer) or array.min() < 0 or array.max() > 255:
                raise ImageDecodeError(f"Unsupported pixel format {array.dtype}")
            array = array.astype(np.uint8)
        return np.ascontiguousarray(array[:, :, :3])

    def preprocess_for_classification(
        self,
        image: NDArray[np.uint8],
        *,
        resize_to: int,
        crop_size: int,
        mean: tuple[float, float, float],
        std: tuple[float, float, float],
    ) -> NDArray[np.float32]:
        """Prepare an image for the classification model.

        The short side is resized to ``resize_to``, the center ``crop_size``
        square is cut out, pixels are scaled to [0, 1] and normalized.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            1x3xCROPxCROP float32 tensor.
        """
        rgb = self.ensure_rgb(image)
        pil_image = Image.fromarray(rgb)

        width, height = pil_image.size
        scale = resize_to / min(width, height)
        new_size = (max(crop_size, round(width * scale)), max(crop_size, round(height * scale)))
        resized = pil_image.resize(new_size, Image.Resampling.BILINEAR)

        left = (resized.width - crop_size) // 2
        top = (resized.height - crop_size) // 2
        cropped = resized.crop((left, top, left + crop_size, top + crop_size))

        pixels = np.asarray(cropped, dtype=np.float32) / 255.0
        pixels = (pixels - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
        return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
