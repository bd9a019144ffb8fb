import time
from typing import Callable, Optional

import jwt

from autosign.logger import debug
from autosign.src.core.errors import CodesignError, ErrorKind

# Apple accepts tokens for up to 20 minutes
TOKEN_LIFETIME = 19 * 60
# Regenerate a little early so clock skew does not reject a token in flight
REFRESH_MARGIN = 2 * 60


class APIKeyToken:
    """ES256 signed bearer token for the App Store Connect API"""

    def __init__(
        self,
        key_id: str,
        issuer_id: str,
        private_key: str,
        audience: str,
        clock: Callable[[], float] = time.time,
        on_error: Optional[Callable[[str], None]] = None,
    ):
        self.key_id = key_id
        self.issuer_id = issuer_id
        self.private_key = private_key
        self.audience = audience
        self.clock = clock
        self.on_error = on_error
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def invalidate(self) -> None:
        """Force the next call to sign a fresh token"""
        self._token = None
        self._expires_at = 0.0

    def is_valid(self) -> bool:
        return self._token is not None and self.clock() < self._expires_at - REFRESH_MARGIN

    def get(self) -> str:
        """Return a signed token, regenerating it when close to expiry"""
        if self.is_valid():
            return self._token

        if self._token is None:
            debug("Generating JWT token")
        else:
            debug("JWT token is about to expire, regenerating...")

        issued_at = int(self.clock())
        claims = {
            "iss": self.issuer_id,
            "iat": issued_at,
            "exp": issued_at + TOKEN_LIFETIME,
            "aud": self.audience,
        }
        try:
            token = jwt.encode(
                claims,
                self.private_key,
                algorithm="ES256",
                headers={"kid": self.key_id},
            )
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            message = f"JWT signing: {e}"
            if self.on_error:
                self.on_error(message)
            raise CodesignError(
                ErrorKind.AUTH,
                f"failed to sign JWT token, private key format is invalid: {e}",
            ) from e

        self._token = token
        self._expires_at = issued_at + TOKEN_LIFETIME
        return token
