"""Display-capture page: asks the browser for a screen stream and samples one frame."""

from __future__ import annotations

import base64
import binascii
from typing import Tuple

PERMISSION_ERRORS = ("NotAllowedError", "Permission denied", "PermissionDeniedError")

STATE_SCRIPT = """
() => ({
  image: window.capturedImageData || null,
  error: window.captureError || null,
  width: window.capturedWidth || 0,
  height: window.capturedHeight || 0,
})
"""


def desktop_page_html(quality: float = 0.9) -> str:
    return f"""<!DOCTYPE html>
<html>
<head><title>Desktop capture</title></head>
<body>
<video id="stream" autoplay muted playsinline></video>
<canvas id="frame"></canvas>
<script>
(async () => {{
  try {{
    const stream = await navigator.mediaDevices.getDisplayMedia({{
      video: {{ displaySurface: "monitor" }},
      audio: false,
    }});
    const video = document.getElementById("stream");
    video.srcObject = stream;
    await new Promise((resolve) => (video.onloadedmetadata = resolve));
    await video.play();
    await new Promise((resolve) => setTimeout(resolve, 500));
    const canvas = document.getElementById("frame");
    canvas.width = video.videoWidth;
    canvas.height = video.videoHeight;
    canvas.getContext("2d").drawImage(video, 0, 0);
    window.capturedWidth = canvas.width;
    window.capturedHeight = canvas.height;
    window.capturedImageData = canvas.toDataURL("image/jpeg", {quality});
    stream.getTracks().forEach((track) => track.stop());
  }} catch (err) {{
    window.captureError = (err && err.name ? err.name + ": " : "") + (err && err.message ? err.message : String(err));
  }}
}})();
</script>
</body>
</html>
"""


def is_permission_error(message: str) -> bool:
    return any(marker.lower() in message.lower() for marker in PERMISSION_ERRORS)


def decode_data_url(url: str) -> Tuple[str, bytes]:
    """Split ``data:<mime>;base64,<payload>`` into mime type and bytes."""
    if not url.startswith("data:") or "," not in url:
        raise ValueError("not a data URL")
    header, payload = url[5:].split(",", 1)
    mime = header.split(";", 1)[0] or "application/octet-stream"
    if ";base64" not in header:
        raise ValueError("data URL is not base64 encoded")
    try:
        return mime, base64.b64decode(payload, validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64 payload: {e}") from e


def encode_data_url(data: bytes, mime_type: str = "image/jpeg") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"
