import base64
import io
import json

import qrcode
from qrcode.constants import ERROR_CORRECT_H


def dump_payload(payload: dict) -> str:
    return json.dumps(payload, separators=(",", ":"), default=str)


def encode(data: str, box_size: int = 8, border: int = 1) -> str:
    """Render `data` as a PNG QR code and return it as a data URL."""
    qr = qrcode.QRCode(version=None, error_correction=ERROR_CORRECT_H, box_size=box_size, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf)
    return f"data:image/png;base64,{base64.b64encode(buf.getvalue()).decode()}"
