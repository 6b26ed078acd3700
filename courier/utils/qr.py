"""QR rendering for pairing codes shown on the admin screen."""

import base64
import io

import qrcode


def make_qr_data_uri(payload: str, box_size: int = 6, border: int = 2) -> str:
    """
    Render ``payload`` as a PNG QR code.

    Args:
        payload: Text to encode (the pairing code)
        box_size: Pixels per QR module
        border: Quiet zone width in modules

    Returns:
        ``data:image/png;base64,...`` URI
    """
    qr = qrcode.QRCode(border=border, box_size=box_size)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
