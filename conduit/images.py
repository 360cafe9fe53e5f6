import asyncio
import base64
import io
import re
from typing import Optional, Tuple

from PIL import Image


_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(?:;[^,;]*)*?);base64,(?P<data>.*)$", re.DOTALL)
DEFAULT_MIME = "image/png"


def parse_data_url(url: str) -> Tuple[str, str]:
    """Split a base64 data-URL into ``(mime_type, payload)``."""
    match = _DATA_URL_RE.match((url or "").strip())
    if not match:
        raise ValueError("not a base64 data URL")
    mime = match.group("mime") or DEFAULT_MIME
    return mime, match.group("data").strip()


def to_data_url(mime_type: str, payload: str) -> str:
    return f"data:{mime_type};base64,{payload}"


def split_image(value: str) -> Tuple[str, str]:
    """Accept either a data-URL or bare base64 (assumed PNG)."""
    if value.startswith("data:"):
        return parse_data_url(value)
    return DEFAULT_MIME, value.strip()


def downscale_image(payload: str, max_side: int, quality: int = 85) -> Tuple[str, str]:
    """Cap the longest side at ``max_side`` and re-encode as JPEG.

    Returns ``(mime_type, base64_payload)``. Images already within bounds are
    passed through untouched.
    """
    raw = base64.b64decode(payload)
    with Image.open(io.BytesIO(raw)) as img:
        if not max_side or max(img.size) <= max_side:
            return Image.MIME.get(img.format or "", DEFAULT_MIME), payload
        img = img.copy()
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    img.thumbnail((max_side, max_side), Image.LANCZOS)
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    return "image/jpeg", base64.b64encode(buffer.getvalue()).decode("ascii")


async def prepare_local_image(
    value: str,
    max_side: int,
    quality: int,
    cancel_event: Optional[asyncio.Event] = None,
) -> Optional[str]:
    """Downscale one image for the local server off the event loop.

    Returns bare base64, or ``None`` when cancelled.
    """
    if cancel_event is not None and cancel_event.is_set():
        return None
    _, payload = split_image(value)
    _, resized = await asyncio.to_thread(downscale_image, payload, max_side, quality)
    if cancel_event is not None and cancel_event.is_set():
        return None
    return resized
