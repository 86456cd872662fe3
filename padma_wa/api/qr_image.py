"""Render QR challenge strings as PNG data URLs."""

from __future__ import annotations

import base64
import io

import qrcode


def render_qr_data_url(value: str, *, box_size: int = 8, border: int = 2) -> str:
    """Return ``data:image/png;base64,...`` encoding *value* as a QR code."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(value)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
