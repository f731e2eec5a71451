"""WebP encoders and the startup probe that picks one.

The native ``cwebp`` encoder is preferred; Pillow is the baseline fallback.
"""

from __future__ import annotations

import shutil
import subprocess
import tempfile
from functools import lru_cache
from io import BytesIO
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from PIL import Image, ImageOps, features

from webp_pipeline.core.config import settings
from webp_pipeline.core.logging import get_logger

logger = get_logger(__name__)


class CodecError(RuntimeError):
    """Raised when an image cannot be decoded or encoded to WebP."""


class CodecUnavailableError(RuntimeError):
    """Raised when no WebP encoder is usable in this environment."""


class ImageCodec(Protocol):
    name: str

    def is_available(self) -> bool:
        ...

    def encode_webp(self, data: bytes, quality: int) -> bytes:
        ...


class CwebpCodec:
    """Encodes through the libwebp ``cwebp`` command-line tool."""

    name = "cwebp"

    def __init__(self, binary: str = "cwebp", timeout: float = 120.0) -> None:
        self.binary = binary
        self.timeout = timeout

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def encode_webp(self, data: bytes, quality: int) -> bytes:
        with tempfile.TemporaryDirectory(prefix="webp_") as workdir:
            source = Path(workdir) / "source"
            output = Path(workdir) / "output.webp"
            source.write_bytes(data)

            cmd = [self.binary, "-quiet", "-mt", "-q", str(quality), str(source), "-o", str(output)]
            logger.debug("cwebp_invoked", command=" ".join(cmd))
            try:
                result = subprocess.run(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    check=False,
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired as exc:
                raise CodecError(f"cwebp timed out after {self.timeout}s") from exc
            except FileNotFoundError as exc:
                raise CodecUnavailableError(f"{self.binary} not found") from exc

            if result.returncode != 0:
                raise CodecError(f"cwebp failed (rc={result.returncode}): {result.stderr.strip()}")
            if not output.exists():
                raise CodecError("cwebp reported success but produced no output")
            return output.read_bytes()


class PillowCodec:
    """Encodes with Pillow's bundled libwebp bindings."""

    name = "pillow"

    def __init__(self, method: int = 4) -> None:
        self.method = method

    def is_available(self) -> bool:
        return bool(features.check("webp"))

    def encode_webp(self, data: bytes, quality: int) -> bytes:
        try:
            with Image.open(BytesIO(data)) as img:
                img = ImageOps.exif_transpose(img)
                img = self._normalize_mode(img)
                buffer = BytesIO()
                img.save(buffer, format="WEBP", quality=quality, method=self.method)
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise CodecError(f"Pillow could not convert image: {exc}") from exc
        return buffer.getvalue()

    @staticmethod
    def _normalize_mode(img: Image.Image) -> Image.Image:
        if img.mode in ("RGB", "RGBA"):
            return img
        has_alpha = img.mode in ("LA", "PA") or (img.mode == "P" and "transparency" in img.info)
        return img.convert("RGBA" if has_alpha else "RGB")


CODEC_FACTORIES: Dict[str, Callable[[], ImageCodec]] = {
    "cwebp": lambda: CwebpCodec(settings.cwebp_binary, settings.cwebp_timeout_seconds),
    "pillow": PillowCodec,
}


def select_codec(
    preference: Sequence[str],
    factories: Optional[Dict[str, Callable[[], ImageCodec]]] = None,
) -> ImageCodec:
    """Return the first available codec in ``preference`` order."""

    factories = factories if factories is not None else CODEC_FACTORIES
    probed: List[str] = []
    for name in preference:
        factory = factories.get(name)
        if factory is None:
            logger.warning("codec_unknown", codec=name)
            continue
        codec = factory()
        if codec.is_available():
            logger.info("codec_selected", codec=codec.name, probed=probed)
            return codec
        logger.warning("codec_unavailable", codec=name)
        probed.append(name)

    raise CodecUnavailableError(f"No WebP codec available (tried: {', '.join(preference) or 'none'})")


@lru_cache
def get_codec() -> ImageCodec:
    """Probe once per process and reuse the selected codec."""

    return select_codec(settings.codec_preference)
