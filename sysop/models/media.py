"""sysop.models.media — Image attachments for multimodal providers."""

from __future__ import annotations

import base64
import mimetypes
from pathlib import Path

from sysop.errors import ProviderError
from sysop.models.base import ImageAttachment

# Larger images are rejected before they are base64-inflated into a request
MAX_IMAGE_BYTES = 8 * 1024 * 1024


def load_image(path: str) -> ImageAttachment:
    """Read and encode the image at *path* once, for attaching to a message.

    Raises
    ------
    ProviderError
        Missing, unreadable, oversized or non-image file.
    """
    try:
        target = Path(path).expanduser().resolve()
        if not target.is_file():
            raise ProviderError(f"No such image: {path}", kind="response")
        mime, _ = mimetypes.guess_type(target.name)
        if not mime or not mime.startswith("image/"):
            raise ProviderError(f"Not an image file: {target}", kind="response")
        data = target.read_bytes()
    except (OSError, ValueError, RuntimeError) as exc:
        raise ProviderError(f"Cannot read image {path}: {exc}", kind="response") from exc
    if len(data) > MAX_IMAGE_BYTES:
        raise ProviderError(f"Image too large: {target} ({len(data)} bytes)", kind="response")
    return ImageAttachment(
        path=str(target),
        mime_type=mime,
        data=base64.b64encode(data).decode("ascii"),
    )
