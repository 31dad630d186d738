"""Password hashing and signed session tokens."""
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

import jwt
from passlib.context import CryptContext

from errors import TokenBadSignature, TokenExpired, TokenMalformed, UpstreamFailure

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Verified against when the email is unknown; never matches.
_DUMMY_HASH = pwd_context.hash("directory-dummy-password")

# Claims the issuer owns; callers cannot smuggle them in through ``claims``.
_RESERVED = {"exp", "iat", "mfa"}


class TokenKind(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Check a password; an absent hash still costs one hash verification."""
    if not hashed_password:
        pwd_context.verify(plain_password, _DUMMY_HASH)
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Unrecognised hash format stored for this user
        logger.warning("Stored password hash could not be parsed")
        return False


class TokenIssuer:
    """
    Stateless signer/verifier for session tokens.

    Pending tokens carry ``mfa: True`` and prove only that the password
    check passed. Verified tokens never carry it; once the second factor
    succeeds they carry ``mfa_verified: True`` as well.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=60),
        pending_ttl: timedelta = timedelta(minutes=5),
    ):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.pending_ttl = pending_ttl

    def issue(self, claims: Dict[str, Any], ttl: timedelta, kind: TokenKind = TokenKind.VERIFIED) -> str:
        to_encode = {k: v for k, v in claims.items() if k not in _RESERVED}
        now = datetime.now(timezone.utc)
        to_encode.update({"iat": now, "exp": now + ttl})
        if kind is TokenKind.PENDING:
            to_encode["mfa"] = True
            to_encode.pop("mfa_verified", None)
        try:
            return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)
        except (jwt.PyJWTError, NotImplementedError, TypeError) as exc:
            logger.exception("Failed to sign session token")
            raise UpstreamFailure() from exc

    def issue_verified(self, claims: Dict[str, Any]) -> str:
        return self.issue(claims, self.access_ttl, TokenKind.VERIFIED)

    def issue_pending(self, claims: Dict[str, Any]) -> str:
        return self.issue(claims, self.pending_ttl, TokenKind.PENDING)

    def verify(self, token: str, kind: Optional[TokenKind] = None) -> Dict[str, Any]:
        """
        Decode a token and return its claims.

        When ``kind`` is given the token must be of that kind; a pending
        token presented where a verified one is required is rejected as
        malformed.
        """
        if not token:
            raise TokenMalformed()
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except jwt.InvalidSignatureError as exc:
            raise TokenBadSignature() from exc
        except jwt.PyJWTError as exc:
            raise TokenMalformed() from exc

        if kind is not None and self.kind_of(payload) is not kind:
            raise TokenMalformed()
        return payload

    @staticmethod
    def kind_of(claims: Dict[str, Any]) -> TokenKind:
        return TokenKind.PENDING if claims.get("mfa") else TokenKind.VERIFIED

    @staticmethod
    def subject_claims(claims: Dict[str, Any]) -> Dict[str, Any]:
        """Strip issuer-owned claims so the rest can be re-issued."""
        return {k: v for k, v in claims.items() if k not in _RESERVED}
