"""
Codificación de códigos de emparejamiento WhatsApp como imagen QR.

El backend recibe el QR como data URL PNG listo para incrustar en un <img>.
"""

import base64
import io

import qrcode


def build_qr_png(data: str) -> bytes:
    """Renderiza `data` como QR en PNG."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=6,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def encode_qr_data_url(data: str) -> str:
    """
    Codifica un código de emparejamiento como data URL escaneable.

    Args:
        data: Cadena QR emitida por el cliente WhatsApp

    Returns:
        String ``data:image/png;base64,...``
    """
    encoded = base64.b64encode(build_qr_png(data)).decode("ascii")
    return f"data:image/png;base64,{encoded}"
