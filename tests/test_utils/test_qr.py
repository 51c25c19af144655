"""
Tests para la codificación de QR.
"""

import base64

from wa_bot_service.utils.qr import build_qr_png, encode_qr_data_url

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class TestQrEncoding:
    """Tests para build_qr_png / encode_qr_data_url."""

    def test_png_bytes(self):
        png = build_qr_png("2@AbCdEf,ghIjKl,mnOpQr")

        assert png.startswith(PNG_SIGNATURE)

    def test_data_url(self):
        # Act
        data_url = encode_qr_data_url("2@AbCdEf,ghIjKl,mnOpQr")

        # Assert
        prefix = "data:image/png;base64,"
        assert data_url.startswith(prefix)
        assert base64.b64decode(data_url[len(prefix):]).startswith(PNG_SIGNATURE)
