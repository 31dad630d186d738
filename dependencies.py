"""FastAPI dependencies: component lookup and bearer-token guards."""
from typing import Any, Dict, Optional

from fastapi import Depends, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth_service import AuthService
from directory import DirectoryService
from errors import InvalidOrExpiredToken
from monitor import MonitoringFlags
from schemas import User
from security import TokenKind

security = HTTPBearer(auto_error=False)


def get_directory(request: Request) -> DirectoryService:
    return request.app.state.directory


def get_auth(request: Request) -> AuthService:
    return request.app.state.auth


def get_flags(request: Request) -> MonitoringFlags:
    return request.app.state.flags


def bearer_token(credentials: Optional[HTTPAuthorizationCredentials] = Security(security)) -> str:
    if credentials is None or not credentials.credentials:
        raise InvalidOrExpiredToken("Access token required")
    return credentials.credentials


def require_session(token: str = Depends(bearer_token), auth: AuthService = Depends(get_auth)) -> Dict[str, Any]:
    """Claims of a fully verified session. Pending tokens are rejected."""
    return auth.authenticate(token, TokenKind.VERIFIED)


async def get_current_user(
    claims: Dict[str, Any] = Depends(require_session), auth: AuthService = Depends(get_auth)
) -> User:
    return await auth.current_user(claims)


def actor_id(claims: Dict[str, Any] = Depends(require_session)) -> int:
    try:
        return int(claims["sub"])
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidOrExpiredToken() from exc
