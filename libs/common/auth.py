"""Authentication utilities.

Central helpers for JWT issuance and verification plus a small FastAPI
dependency that resolves the optional bearer token of a request.

Design
- "AuthManager" is for end-user tokens; keep payloads minimal (subject,
  role, owning creator/brand ids) and avoid sensitive data
- Missing credentials are not an error here; callers decide whether an
  anonymous request is acceptable
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import HTTPException, status
import structlog

logger = structlog.get_logger("auth")


class AuthManager:
    """Authentication manager for platform services.

    Issues and validates end-user JWTs.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        access_token_expire_minutes: int = 30
    ):
        """Configure JWT settings for end-user tokens.

        Parameters
        - secret_key: Symmetric key for signing/verification
        - algorithm: JWT algorithm (default HS256)
        - access_token_expire_minutes: Default token TTL in minutes
        """
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.access_token_expire_minutes = access_token_expire_minutes

    def create_access_token(
        self,
        data: Dict[str, Any],
        expires_delta: Optional[timedelta] = None
    ) -> str:
        """Create a JWT access token."""
        to_encode = data.copy()
        if expires_delta is None:
            expires_delta = timedelta(minutes=self.access_token_expire_minutes)
        to_encode.update({"exp": datetime.now(timezone.utc) + expires_delta})
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Dict[str, Any]:
        """Verify and decode a JWT token.

        Raises ``HTTPException`` with 401 on invalid/expired tokens.
        """
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired",
                headers={"WWW-Authenticate": "Bearer"},
            )
        except jwt.InvalidTokenError as e:
            logger.warning("Rejected bearer token", error=str(e))
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Could not validate credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )

    def claims_from_header(self, authorization: Optional[str]) -> Optional[Dict[str, Any]]:
        """Decode an ``Authorization`` header value.

        Returns ``None`` when the header is absent; a header that is present
        but malformed or carries a bad token raises a 401.
        """
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unsupported authorization scheme",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return self.verify_token(token.strip())
