"""Image variant generation using Pillow."""

from __future__ import annotations

import io
from dataclasses import dataclass
from enum import Enum

from PIL import Image, ImageOps, UnidentifiedImageError

from lotmedia.config import ImagingConfig
from lotmedia.lib.exceptions import InvalidImageData

_FORMAT_TO_CONTENT_TYPE = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}

CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
}

_DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError)


class Variant(str, Enum):
    """Derived renditions of an uploaded image."""

    ORIGINAL = "original"
    THUMBNAIL = "thumbnail"
    MEDIUM = "medium"
    LARGE = "large"


def detect_image_content_type(data: bytes) -> str | None:
    """Detect image content type from magic bytes.

    Returns ``None`` if the data does not match a known image signature.
    """
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    return None


def extension_for(content_type: str) -> str:
    return CONTENT_TYPE_EXTENSIONS.get(content_type, ".jpg")


@dataclass(frozen=True)
class RenderedImage:
    data: bytes
    content_type: str
    width: int
    height: int

    @property
    def size(self) -> int:
        return len(self.data)


VariantSet = dict[Variant, RenderedImage]


def _open(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def _prepare_mode(img: Image.Image, fmt: str) -> Image.Image:
    """Convert to a mode the target encoder accepts."""
    has_alpha = img.mode in ("RGBA", "LA", "PA") or "transparency" in img.info
    if fmt == "JPEG":
        return img.convert("RGB") if img.mode != "RGB" else img
    if fmt == "GIF":
        return img
    if img.mode in ("RGB", "RGBA"):
        return img
    return img.convert("RGBA" if has_alpha else "RGB")


def _encode(img: Image.Image, fmt: str, quality: int) -> bytes:
    img = _prepare_mode(img, fmt)
    save_kwargs: dict = {}
    if fmt == "JPEG":
        save_kwargs["quality"] = quality
        save_kwargs["optimize"] = True
    elif fmt == "PNG":
        save_kwargs["optimize"] = True
    elif fmt == "WEBP":
        save_kwargs["quality"] = quality

    buf = io.BytesIO()
    img.save(buf, format=fmt, **save_kwargs)
    return buf.getvalue()


def cover_fit(img: Image.Image, size: tuple[int, int]) -> Image.Image:
    """Scale and centre-crop to exactly *size*."""
    return ImageOps.fit(img, size, Image.LANCZOS, centering=(0.5, 0.5))


def inside_fit(img: Image.Image, size: tuple[int, int]) -> Image.Image:
    """Scale down to fit within *size*, preserving aspect ratio. Never upscales."""
    img = img.copy()
    img.thumbnail(size, Image.LANCZOS)
    return img


class VariantGenerator:
    """Derive the fixed set of stored variants from raw upload bytes."""

    def __init__(self, config: ImagingConfig | None = None) -> None:
        self._config = config or ImagingConfig()

    def _output_format(self, source_format: str) -> str:
        if self._config.output_format == "webp":
            return "WEBP"
        return source_format if source_format in _FORMAT_TO_CONTENT_TYPE else "PNG"

    def _render(self, img: Image.Image, fmt: str, quality: int) -> RenderedImage:
        data = _encode(img, fmt, quality)
        return RenderedImage(
            data=data,
            content_type=_FORMAT_TO_CONTENT_TYPE[fmt],
            width=img.width,
            height=img.height,
        )

    def generate(
        self,
        data: bytes,
        content_type: str,
        *,
        preserve_original: bool = False,
        quality: int | None = None,
    ) -> VariantSet:
        """Produce every variant for one upload.

        Raises :class:`InvalidImageData` when the bytes cannot be decoded or
        re-encoded; in that case nothing is returned for the file.
        """
        if preserve_original:
            return self._passthrough(data, content_type)

        quality = quality or self._config.quality
        try:
            source = _open(data)
            source_format = source.format or "PNG"
            if getattr(source, "is_animated", False):
                source.seek(0)
            img = ImageOps.exif_transpose(source)
            fmt = self._output_format(source_format)

            variants: VariantSet = {
                Variant.ORIGINAL: self._render(img, fmt, quality),
                Variant.THUMBNAIL: self._render(cover_fit(img, self._config.thumbnail_size), fmt, quality),
            }
            if self._config.extra_variants:
                variants[Variant.MEDIUM] = self._render(cover_fit(img, self._config.medium_size), fmt, quality)
                variants[Variant.LARGE] = self._render(inside_fit(img, self._config.large_size), fmt, quality)
        except _DECODE_ERRORS as exc:
            raise InvalidImageData(f"Could not process image data: {exc}") from exc
        return variants

    def _passthrough(self, data: bytes, content_type: str) -> VariantSet:
        """Keep the uploaded bytes as-is; no derived variants."""
        try:
            img = _open(data)
        except _DECODE_ERRORS as exc:
            raise InvalidImageData(f"Could not decode image data: {exc}") from exc

        detected = _FORMAT_TO_CONTENT_TYPE.get(img.format or "") or detect_image_content_type(data)
        return {
            Variant.ORIGINAL: RenderedImage(
                data=data,
                content_type=detected or content_type,
                width=img.width,
                height=img.height,
            )
        }


def render_placeholder(size: tuple[int, int] = (300, 200)) -> bytes:
    """Render a neutral grey PNG used when no placeholder file is configured."""
    img = Image.new("RGB", size, (204, 204, 204))
    buf = io.BytesIO()
    img.save(buf, format="PNG", optimize=True)
    return buf.getvalue()
