"""
QR Code Rendering

Turns a payment URL into a PNG data URL that a phone camera can scan.
"""
import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M


def render_qr_data_url(url: str) -> str:
    """
    Render a URL as a base64 PNG data URL.

    Error-correction level M with a one-module quiet zone, sized for mobile
    scanning.
    """
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=8, border=1)
    qr.add_data(url)
    qr.make(fit=True)

    image = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")

    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
