"""Image input adapter: resolves image sources into decoded RGB bitmaps."""

import base64
import io
import logging
from pathlib import Path
from typing import Optional, Any, Tuple, Union
from urllib.parse import urlparse
import httpx
from PIL import Image, ImageColor, UnidentifiedImageError
import torch
from torchvision.transforms import functional as TF

from lmchat.config import settings
from lmchat.schemas.error_models import InvalidImageError


logger = logging.getLogger(__name__)


CropBox = Tuple[int, int, int, int]


class ImageInput:
    """An image as supplied by the caller, not yet decoded.

    Sources are PIL images, file paths, encoded bytes, http(s) or data URLs,
    ``CHW`` tensors and solid colours. A solid colour has no extent until it
    is cropped, mirroring how infinite images behave in image pipelines.
    Crop boxes use PIL's ``(left, upper, right, lower)`` convention.
    """

    PIL = "pil"
    PATH = "path"
    DATA = "data"
    URL = "url"
    TENSOR = "tensor"
    COLOR = "color"

    def __init__(self, kind: str, value: Any, crop_box: Optional[CropBox] = None):
        self.kind = kind
        self.value = value
        self.crop_box = crop_box

    @classmethod
    def pil_image(cls, image: Image.Image) -> "ImageInput":
        return cls(cls.PIL, image)

    @classmethod
    def path(cls, path: Union[str, Path]) -> "ImageInput":
        return cls(cls.PATH, Path(path))

    @classmethod
    def data(cls, data: bytes) -> "ImageInput":
        return cls(cls.DATA, bytes(data))

    @classmethod
    def url(cls, url: str) -> "ImageInput":
        return cls(cls.URL, url)

    @classmethod
    def tensor(cls, tensor: torch.Tensor) -> "ImageInput":
        return cls(cls.TENSOR, tensor)

    @classmethod
    def color(cls, color: Union[str, Tuple[int, int, int]]) -> "ImageInput":
        return cls(cls.COLOR, color)

    @classmethod
    def coerce(cls, image: Any) -> "ImageInput":
        """Wrap a raw image value in an ``ImageInput``.

        Raises:
            InvalidImageError: If the value is not a supported image source
        """
        if isinstance(image, ImageInput):
            return image
        if isinstance(image, Image.Image):
            return cls.pil_image(image)
        if isinstance(image, torch.Tensor):
            return cls.tensor(image)
        if isinstance(image, (bytes, bytearray)):
            return cls.data(image)
        if isinstance(image, Path):
            return cls.path(image)
        if isinstance(image, str):
            if is_valid_image_url(image):
                return cls.url(image)
            return cls.path(image)
        raise InvalidImageError(f"Unsupported image type: {type(image).__name__}")

    @property
    def is_bounded(self) -> bool:
        return self.kind != self.COLOR or self.crop_box is not None

    def cropped(self, box: CropBox) -> "ImageInput":
        """Return a copy restricted to ``box``, intersected with any earlier crop."""
        if len(box) != 4:
            raise InvalidImageError("Crop box must have four coordinates")
        left, upper, right, lower = (int(v) for v in box)
        if self.crop_box is not None:
            old_left, old_upper, old_right, old_lower = self.crop_box
            left, upper = max(left, old_left), max(upper, old_upper)
            right, lower = min(right, old_right), min(lower, old_lower)
        return ImageInput(self.kind, self.value, (left, upper, right, lower))

    def __repr__(self) -> str:
        value = self.value if self.kind in (self.PATH, self.COLOR) else f"<{type(self.value).__name__}>"
        if self.kind == self.URL:
            value = self.value[:50]
        return f"ImageInput(kind={self.kind!r}, value={value!r}, crop_box={self.crop_box!r})"


class ImageProcessor:
    """Normalizes decoded images for vision-language processors."""

    def __init__(self, max_size: Optional[int] = None):
        """Initialize ImageProcessor.

        Args:
            max_size: Maximum dimension for any side
        """
        self.max_size = max_size or settings.max_image_dimension

    def preprocess_image(self, image: Image.Image) -> Image.Image:
        """Convert to RGB and bound the longest side by ``max_size``."""
        if image.mode != 'RGB':
            image = image.convert('RGB')

        width, height = image.size
        if max(width, height) > self.max_size:
            if width > height:
                new_width = self.max_size
                new_height = max(1, int(height * (self.max_size / width)))
            else:
                new_height = self.max_size
                new_width = max(1, int(width * (self.max_size / height)))

            image = image.resize((new_width, new_height), Image.Resampling.BICUBIC)

        return image


class ImageHandler:
    """Resolves ``ImageInput`` sources into concrete decoded bitmaps."""

    def __init__(
        self,
        max_image_size: Optional[int] = None,
        timeout: Optional[float] = None,
        max_dimension: Optional[int] = None
    ):
        """Initialize ImageHandler.

        Args:
            max_image_size: Maximum encoded image size in bytes
            timeout: HTTP request timeout in seconds
            max_dimension: Maximum side length of resolved images
        """
        self.max_image_size = max_image_size or settings.max_image_bytes
        self.timeout = timeout or settings.image_fetch_timeout
        self.processor = ImageProcessor(max_size=max_dimension)

        # HTTP client for URL fetching
        self.http_client = httpx.AsyncClient(timeout=self.timeout)

        # Supported image formats
        self.supported_formats = {
            'JPEG', 'PNG', 'GIF', 'BMP', 'TIFF', 'WEBP'
        }

    async def resolve(self, image: Any) -> Image.Image:
        """Decode and crop an image source into an RGB bitmap.

        Args:
            image: ``ImageInput`` or any value ``ImageInput.coerce`` accepts

        Returns:
            Decoded RGB PIL image

        Raises:
            InvalidImageError: If the image cannot be decoded or its region is empty
        """
        source = ImageInput.coerce(image)
        if not source.is_bounded:
            raise InvalidImageError("Solid color image has no extent; crop it to a region first")

        try:
            if source.kind == ImageInput.COLOR:
                decoded = self._render_color(source)
            else:
                decoded = self._apply_crop(await self._decode(source), source.crop_box)
        except InvalidImageError:
            raise
        except Exception as e:
            logger.error(f"Error resolving image {source!r}: {e}")
            raise InvalidImageError(f"Failed to resolve image: {str(e)}")

        result = self.processor.preprocess_image(decoded)
        logger.debug(f"Resolved {source.kind} image to {result.size}")
        return result

    async def _decode(self, source: ImageInput) -> Image.Image:
        if source.kind == ImageInput.PIL:
            image = source.value.copy()
        elif source.kind == ImageInput.PATH:
            image = self._open_bytes(source.value.read_bytes())
        elif source.kind == ImageInput.DATA:
            image = self._open_bytes(source.value)
        elif source.kind == ImageInput.URL:
            image = await self._fetch_url(source.value)
        elif source.kind == ImageInput.TENSOR:
            image = TF.to_pil_image(source.value.detach().cpu())
        else:
            raise InvalidImageError(f"Unknown image source kind: {source.kind}")
        return image

    def _render_color(self, source: ImageInput) -> Image.Image:
        left, upper, right, lower = source.crop_box
        width, height = right - left, lower - upper
        if width <= 0 or height <= 0:
            raise InvalidImageError(f"Crop region {source.crop_box} is empty")
        color = source.value
        if isinstance(color, str):
            color = ImageColor.getrgb(color)
        return Image.new('RGB', (width, height), color)

    def _apply_crop(self, image: Image.Image, crop_box: Optional[CropBox]) -> Image.Image:
        if crop_box is None:
            return image

        # Clip to the image bounds before cropping
        width, height = image.size
        left, upper, right, lower = crop_box
        box = (max(left, 0), max(upper, 0), min(right, width), min(lower, height))
        if box[2] <= box[0] or box[3] <= box[1]:
            raise InvalidImageError(
                f"Crop region {crop_box} does not intersect image of size {image.size}"
            )
        return image.crop(box)

    def _open_bytes(self, image_data: bytes) -> Image.Image:
        if not image_data:
            raise InvalidImageError("Image data is empty")

        if len(image_data) > self.max_image_size:
            raise InvalidImageError(
                f"Image size ({len(image_data)} bytes) exceeds maximum ({self.max_image_size} bytes)"
            )

        try:
            image = Image.open(io.BytesIO(image_data))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            raise InvalidImageError(f"Cannot decode image data: {str(e)}")

        if image.format not in self.supported_formats:
            raise InvalidImageError(f"Unsupported image format: {image.format}")

        return image

    async def _fetch_url(self, url: str) -> Image.Image:
        if url.startswith('data:'):
            if not url.startswith('data:image/') or ',' not in url:
                raise InvalidImageError("Invalid data URI format")
            header, data = url.split(',', 1)
            return self._open_bytes(base64.b64decode(data))

        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https'):
            raise InvalidImageError(f"Unsupported URL scheme: {parsed.scheme}")

        try:
            response = await self.http_client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise InvalidImageError(f"HTTP error downloading image: {str(e)}")

        content_type = response.headers.get('content-type', '')
        if not content_type.startswith('image/'):
            raise InvalidImageError(f"Invalid content type: {content_type}")

        return self._open_bytes(response.content)

    async def close(self):
        """Close HTTP client and cleanup resources."""
        await self.http_client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()


# Utility functions
def is_data_uri(url: str) -> bool:
    """Check if URL is a data URI."""
    return url.startswith('data:')


def is_valid_image_url(url: str) -> bool:
    """Validate if a string could be an image URL (http/https or image data URI)."""
    if is_data_uri(url):
        return url.startswith('data:image/')

    try:
        parsed = urlparse(url)
        return parsed.scheme in ('http', 'https') and bool(parsed.netloc)
    except ValueError:
        return False
