"""
Call transport token issuance.

The call provider only needs an opaque, time-limited credential naming the
channel, the numeric participant id and the participant role. Tokens are
signed JWTs so the media relay can verify them with the shared secret.
"""

from datetime import timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from backend.app.core.clock import utcnow
from backend.app.core.config import settings

ROLE_PUBLISHER = "publisher"


class CallTokenIssuer:
    """Signs join tokens for call channels."""

    def __init__(self, app_id: Optional[str] = None, secret: Optional[str] = None, algorithm: str = "HS256"):
        self.app_id = app_id or settings.call_app_id
        self.secret = secret or settings.call_token_secret
        self.algorithm = algorithm

    def issue(self, channel: str, uid: int, role: str, expires_in_seconds: int) -> Dict[str, Any]:
        """
        Issue a token for ``uid`` on ``channel``.

        Returns:
            dict with ``token`` and naive-UTC ``expires_at``
        """
        expires_at = utcnow() + timedelta(seconds=expires_in_seconds)
        claims = {
            "app_id": self.app_id,
            "channel": channel,
            "uid": uid,
            "role": role,
            "privilege": ROLE_PUBLISHER,
            "exp": expires_at,
        }
        token = jwt.encode(claims, self.secret, algorithm=self.algorithm)
        return {"token": token, "expires_at": expires_at}

    def decode(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError:
            return None
