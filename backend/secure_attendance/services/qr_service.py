"""Rotating QR token minting, decoding and rendering."""
import base64
import calendar
import io
import secrets
from datetime import datetime
from typing import Dict, Optional

import jwt
import qrcode


class QRTokenService:
    """Signs the per-session token that the QR code encodes.

    The signature only proves the token was minted here; whether it is the
    *current* token is decided against the session's stored version.
    """

    ALGORITHM = 'HS256'

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("QR token secret is not configured")
        self.secret = secret

    def mint(self, session_key: str, version: int, issued_at: datetime) -> str:
        """Create a new token for ``session_key`` at ``version``."""
        # 'ts' is the logical rotation time and is never checked against the clock
        payload = {
            'sid': session_key,
            'ver': version,
            'ts': calendar.timegm(issued_at.utctimetuple()),
            'nonce': secrets.token_hex(8)
        }
        return jwt.encode(payload, self.secret, algorithm=self.ALGORITHM)

    def decode(self, token: str) -> Optional[Dict]:
        """Return the token payload, or None if it was not minted by us."""
        if not token or not isinstance(token, str):
            return None
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.ALGORITHM],
                options={'require': ['sid', 'ver']}
            )
        except jwt.InvalidTokenError:
            return None
        return payload

    @staticmethod
    def render_qr(token: str) -> str:
        """Render the token as a PNG data URI for the projector screen."""
        qr = qrcode.QRCode(
            version=None,  # Auto-determine size
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=4,
        )
        qr.add_data(token)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffered = io.BytesIO()
        img.save(buffered, format="PNG")
        img_str = base64.b64encode(buffered.getvalue()).decode()

        return f"data:image/png;base64,{img_str}"
