"""Image preprocessing pipeline.

Fetches raw bytes from an image handle, decodes JPEG/PNG into RGB uint8
arrays (honouring EXIF orientation), and resizes them to the square input
expected by the classifier using bilinear interpolation.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlparse

import httpx
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from photolabel.errors import ClassificationError, ImageDecodeError, ImageFetchError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from photolabel.config import Settings

logger = logging.getLogger(__name__)

ImageHandle = str | Path | bytes

SUPPORTED_EXTENSIONS: tuple[str, ...] = (".jpg", ".jpeg", ".png")
# MPO: multi-frame JPEG written by phone cameras. Frame 0 is the photo.
SUPPORTED_FORMATS = frozenset({"JPEG", "MPO", "PNG"})

FETCH_TIMEOUT_SECONDS: float = 10.0


class ImagePreprocessor:
    """Turns an image handle into a model-ready float32 HxWx3 array."""

    def __init__(self, settings: Settings) -> None:
        self._input_size = settings.input_size
        self._max_file_size = settings.max_file_size
        self._max_image_pixels = settings.max_image_pixels

    @property
    def input_size(self) -> int:
        return self._input_size

    def fetch_bytes(self, handle: ImageHandle) -> bytes:
        """Read raw image bytes from a path, a file/http(s) URI, or memory.

        Raises:
            ImageFetchError: If the bytes cannot be read or are too large.
        """
        if isinstance(handle, bytes | bytearray):
            data = bytes(handle)
        elif isinstance(handle, str) and handle.startswith(("http://", "https://")):
            data = self._fetch_http(handle)
        else:
            data = self._fetch_file(handle)

        if not data:
            raise ImageFetchError("Image is empty")
        if len(data) > self._max_file_size:
            raise ImageFetchError(f"Image is {len(data)} bytes, limit is {self._max_file_size}")
        return data

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Returns:
            HxWx3 RGB uint8 numpy array.

        Raises:
            ImageDecodeError: If the bytes are not a decodable JPEG or PNG,
                or the image exceeds the pixel limit.
        """
        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                if img.format not in SUPPORTED_FORMATS:
                    raise ImageDecodeError(f"Unsupported image format: {img.format}")
                width, height = img.size
                if width * height > self._max_image_pixels:
                    raise ImageDecodeError(f"Image is {width}x{height}, limit is {self._max_image_pixels} pixels")
                img = ImageOps.exif_transpose(img)
                rgb = img.convert("RGB")
                return np.asarray(rgb, dtype=np.uint8)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
            raise ImageDecodeError(f"Cannot decode image: {exc}") from exc

    def resize(self, image: NDArray[np.uint8]) -> NDArray[np.float32]:
        """Resize an HxWx3 image to ``input_size`` x ``input_size`` (bilinear).

        Raises:
            ClassificationError: If the array is not an HxWx3 image.
        """
        if image.ndim != 3 or image.shape[2] != 3:
            raise ClassificationError(f"Expected an HxWx3 image, got shape {image.shape}")
        size = self._input_size
        resized = Image.fromarray(image).resize((size, size), Image.Resampling.BILINEAR)
        return np.asarray(resized, dtype=np.float32)

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _fetch_http(url: str) -> bytes:
        try:
            response = httpx.get(url, timeout=FETCH_TIMEOUT_SECONDS, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ImageFetchError(f"Cannot fetch {url}: {exc}") from exc
        return response.content

    @staticmethod
    def _fetch_file(handle: str | Path) -> bytes:
        if isinstance(handle, str) and handle.startswith("file://"):
            path = Path(unquote(urlparse(handle).path))
        else:
            path = Path(handle)

        if path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            logger.warning("Image %s has an unsupported extension, decoding anyway", path)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ImageFetchError(f"Cannot read {path}: {exc}") from exc
