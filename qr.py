"""
QR code adapters for AuthVault.

Recognition is delegated to zbar (via pyzbar) and rendering to qrcode/Pillow.
Only URI strings cross this boundary.
"""
import base64
import binascii
import io
import logging

import qrcode
from PIL import Image, ImageOps, UnidentifiedImageError

from errors import InvalidFormatError, NotFoundError

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_QR_SIZE = 512
QUIET_ZONE = 20


def image_bytes_from_data_url(data: str) -> bytes:
    """
    Decode a base64 image, with or without a `data:image/...;base64,` prefix.
    """
    if data.startswith("data:image"):
        _, _, data = data.partition(",")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidFormatError(f"image decode failed: {e}") from e


def decode_image(data: bytes) -> str:
    """
    Read the text of the first QR code in an image.

    Args:
        data: PNG/JPEG/... file contents

    Returns:
        Decoded text

    Raises:
        InvalidFormatError: Bytes are not a readable image
        NotFoundError: No QR code found
    """
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidFormatError(f"unreadable image: {e}") from e

    # zbar is a system library; only load it when decoding is requested
    from pyzbar.pyzbar import ZBarSymbol
    from pyzbar.pyzbar import decode as zbar_decode

    candidates = [
        img.convert("RGB"),
        ImageOps.expand(img.convert("L"), border=QUIET_ZONE, fill=255),
    ]
    for candidate in candidates:
        results = zbar_decode(candidate, symbols=[ZBarSymbol.QRCODE])
        if results:
            return results[0].data.decode('utf-8', errors='replace')

    raise NotFoundError("no QR code found in image")


def encode_text(text: str, size: int = DEFAULT_QR_SIZE) -> bytes:
    """
    Render text as a square PNG QR code.

    Args:
        text: Payload, typically an otpauth or otpauth-migration URI
        size: Output width and height in pixels

    Returns:
        PNG file contents
    """
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, border=4)
    qr.add_data(text)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white").get_image()
    img = img.convert("RGB").resize((size, size), Image.NEAREST)

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def encode_text_data_url(text: str, size: int = DEFAULT_QR_SIZE) -> str:
    """Render text as a QR code and return it as a PNG data URL."""
    png = encode_text(text, size)
    return "data:image/png;base64," + base64.b64encode(png).decode('ascii')
