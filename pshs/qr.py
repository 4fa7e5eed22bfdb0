import sys

import qrcode


def print_qrcode(text: str, out=None) -> None:
    """Write `text` as a QR code matrix to the terminal (stderr by default)."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=1,
        border=2,
    )
    qr.add_data(text)
    qr.make(fit=True)
    qr.print_ascii(out=out or sys.stderr, invert=True)
