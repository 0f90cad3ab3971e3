import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt
from jose.exceptions import JOSEError
from passlib.hash import bcrypt
from sqlalchemy.orm import Session

from . import config, crud, models
from .database import get_db
from .exceptions import InvalidToken

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


def _utc_clock() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Issues and checks stateless signed bearer tokens.

    A token carries the username as ``sub`` plus ``iat`` and ``exp``. Validity
    depends only on the signature and the expiry; nothing is stored server
    side, so tokens cannot be revoked before they expire.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        ttl: timedelta = timedelta(hours=24),
        refresh_window: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = _utc_clock,
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.ttl = ttl
        self.refresh_window = refresh_window
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock().timestamp())

    def _decode(self, token: str) -> dict:
        # expiry is checked against our own clock, not the library's
        return jwt.decode(
            token,
            self.secret_key,
            algorithms=[self.algorithm],
            options={"verify_exp": False},
        )

    def issue(self, username: str) -> str:
        now = self._now()
        claims = {
            "sub": username,
            "iat": now,
            "exp": now + int(self.ttl.total_seconds()),
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def validate(self, token: Optional[str]) -> bool:
        """Return True only for a well-formed, correctly signed, unexpired token."""
        if not isinstance(token, str) or not token:
            logger.debug("Rejected token: empty")
            return False
        try:
            claims = self._decode(token)
        except JOSEError as exc:
            logger.debug("Rejected token: %s", exc)
            return False
        if not claims or not claims.get("sub"):
            logger.debug("Rejected token: empty claims")
            return False
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)):
            logger.debug("Rejected token: missing expiry")
            return False
        if self._now() >= exp:
            logger.debug("Rejected token: expired")
            return False
        return True

    def subject(self, token: str) -> str:
        """Username the token was issued for. Expiry is not checked here."""
        try:
            claims = self._decode(token)
        except JOSEError as exc:
            raise InvalidToken("Invalid token") from exc
        username = claims.get("sub")
        if not username:
            raise InvalidToken("Token has no subject")
        return username

    def remaining(self, token: str) -> timedelta:
        try:
            exp = self._decode(token).get("exp")
        except JOSEError:
            return timedelta(0)
        if not isinstance(exp, (int, float)):
            return timedelta(0)
        return timedelta(seconds=exp - self._now())

    def refresh_if_needed(self, token: str) -> str:
        """Reissue a valid token that is close to expiry.

        Invalid or expired tokens come back unchanged and stay invalid.
        """
        if self.validate(token) and self.remaining(token) < self.refresh_window:
            username = self.subject(token)
            logger.info("Refreshing token for %s", username)
            return self.issue(username)
        return token


token_issuer = TokenIssuer(
    config.SECRET_KEY,
    algorithm=config.JWT_ALGORITHM,
    ttl=timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
    refresh_window=timedelta(minutes=config.TOKEN_REFRESH_WINDOW_MINUTES),
)


def get_token_issuer() -> TokenIssuer:
    return token_issuer


def verify_password(plain_password, hashed_password):
    return bcrypt.verify(plain_password, hashed_password)


def authenticate_user(db: Session, username_or_email: str, password: str):
    user = crud.get_user_by_username_or_email(db, username_or_email)
    if not user:
        logger.info("Login failed for %s: unknown user", username_or_email)
        return None
    if not verify_password(password, user.hashed_password):
        logger.info("Login failed for %s: bad password", username_or_email)
        return None
    if not user.enabled:
        logger.info("Login failed for %s: account disabled", username_or_email)
        return None
    return user


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
    issuer: TokenIssuer = Depends(get_token_issuer),
) -> models.User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not issuer.validate(token):
        raise credentials_exception
    user = crud.get_user_by_username(db, issuer.subject(token))
    if user is None or not user.enabled:
        raise credentials_exception
    return user
