"""Time-based one-time password secrets, enrollment material and checks."""
from datetime import datetime
from typing import Optional, Union

import pyotp
import segno

# Codes from one step either side of the current window are accepted.
VALID_WINDOW = 1


class TwoFactorEngine:
    def __init__(self, issuer: str = "Directory"):
        self.issuer = issuer

    def generate_secret(self) -> str:
        return pyotp.random_base32()

    def provisioning_uri(self, secret: str, account: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(name=account, issuer_name=self.issuer)

    def qr_data_uri(self, uri: str) -> str:
        """Render a provisioning URI as a ``data:image/png;base64`` QR code."""
        return segno.make(uri, error="m").png_data_uri(scale=5)

    def verify(self, secret: Optional[str], code: str, for_time: Optional[Union[int, datetime]] = None) -> bool:
        if not secret or not code:
            return False
        code = code.strip().replace(" ", "")
        if not code.isdigit():
            return False
        return pyotp.TOTP(secret).verify(code, for_time=for_time, valid_window=VALID_WINDOW)
