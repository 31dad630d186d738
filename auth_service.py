"""
Authentication state machine.

    password login ──► no second factor enrolled ──► verified token + profile
          │
          └──────────► enrolled ──► pending token ──► verify code ──► verified token

Pending tokens only open ``verify_second_factor``; everything else demands a
verified token.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

from errors import InvalidCode, InvalidCredentials, InvalidOrExpiredToken, UpstreamFailure
from schemas import ProfileResponse, User
from security import TokenIssuer, TokenKind, verify_password
from two_factor import TwoFactorEngine
from users import UserRepository

logger = logging.getLogger(__name__)


@dataclass
class LoginResult:
    """Either ``access_token`` and ``user`` are set, or ``pending_token`` is."""
    access_token: Optional[str] = None
    user: Optional[ProfileResponse] = None
    pending_token: Optional[str] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.pending_token is not None


@dataclass
class Enrollment:
    secret: str
    provisioning_uri: str
    qr_code: str


def claims_for(user: User) -> Dict[str, Any]:
    return {"sub": str(user.id), "email": user.email}


def profile_of(user: User) -> ProfileResponse:
    return ProfileResponse(id=user.id, email=user.email, name=user.name, role=user.role)


class AuthService:
    def __init__(self, users: UserRepository, tokens: TokenIssuer, two_factor: TwoFactorEngine):
        self.users = users
        self.tokens = tokens
        self.two_factor = two_factor

    async def _lookup(self, func, *args) -> Optional[User]:
        try:
            return await run_in_threadpool(func, *args)
        except PyMongoError as exc:
            logger.exception("Store failure during authentication")
            raise UpstreamFailure() from exc

    async def login(self, email: str, password: str) -> LoginResult:
        user = await self._lookup(self.users.get_by_email, email)
        # Unknown emails still pay for one hash check.
        valid = await run_in_threadpool(verify_password, password, user.password_hash if user else None)
        if user is None or not valid:
            logger.info("Failed login for %s", email)
            raise InvalidCredentials()

        if user.mfa_enabled:
            logger.info("Second factor required for user %s", user.id)
            return LoginResult(pending_token=self.tokens.issue_pending(claims_for(user)))

        logger.info("Login success for user %s", user.id)
        return LoginResult(access_token=self.tokens.issue_verified(claims_for(user)), user=profile_of(user))

    def authenticate(self, token: str, kind: TokenKind = TokenKind.VERIFIED) -> Dict[str, Any]:
        """Validate a bearer token of the given kind and return its claims."""
        return self.tokens.verify(token, kind=kind)

    async def current_user(self, claims: Dict[str, Any]) -> User:
        try:
            user_id = int(claims["sub"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidOrExpiredToken() from exc
        user = await self._lookup(self.users.get, user_id)
        if user is None:
            # Token outlived its subject
            raise InvalidOrExpiredToken()
        return user

    async def verify_second_factor(self, pending_token: str, code: str) -> str:
        claims = self.authenticate(pending_token, kind=TokenKind.PENDING)
        user = await self.current_user(claims)
        if not self.two_factor.verify(user.mfa_secret, code):
            logger.info("Second-factor verification failed for user %s", user.id)
            raise InvalidCode()

        verified = self.tokens.subject_claims(claims)
        verified["mfa_verified"] = True
        return self.tokens.issue_verified(verified)

    async def enroll_second_factor(self, verified_token: str) -> Enrollment:
        claims = self.authenticate(verified_token, kind=TokenKind.VERIFIED)
        user = await self.current_user(claims)
        secret = self.two_factor.generate_secret()
        try:
            updated = await run_in_threadpool(self.users.set_mfa_secret, user.id, secret)
        except PyMongoError as exc:
            logger.exception("Error saving second-factor secret for user %s", user.id)
            raise UpstreamFailure() from exc
        if not updated:
            raise InvalidOrExpiredToken()

        uri = self.two_factor.provisioning_uri(secret, user.email)
        logger.info("Second factor enrolled for user %s", user.id)
        return Enrollment(secret=secret, provisioning_uri=uri, qr_code=self.two_factor.qr_data_uri(uri))
