"""Bearer-token boundary.

Tokens are issued by the auth service (HS256, shared secret). Here we only
verify them and pull out the `username` claim; nothing downstream of this
module ever sees a token.
"""

from __future__ import annotations

import jwt

from .config import JWT_SECRET
from .errors import AuthError


class TokenVerifier:
    def __init__(self, secret: str = JWT_SECRET, algorithms: tuple[str, ...] = ("HS256",)):
        self.secret = secret
        self.algorithms = list(algorithms)

    def __call__(self, token: str) -> str:
        """Return the caller's username. Raises AuthError (401)."""
        try:
            claims = jwt.decode(token, self.secret, algorithms=self.algorithms)
        except jwt.ExpiredSignatureError as e:
            raise AuthError("Token expired") from e
        except jwt.InvalidTokenError as e:
            raise AuthError("Invalid token") from e

        username = claims.get("username")
        if not isinstance(username, str) or not username:
            raise AuthError("Token has no username")
        return username
