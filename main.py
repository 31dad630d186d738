import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

import database
from audit import MutationLog
from auth_service import AuthService
from broadcaster import Broadcaster
from config import Settings, configure_logging, get_settings
from dependencies import actor_id, bearer_token, get_auth, get_current_user, get_directory, get_flags, require_session
from directory import DirectoryService
from errors import Conflict, DirectoryError, NotFound, Unauthorized, UpstreamFailure, ValidationFailed
from monitor import ActivityMonitor, MonitoringFlags
from schemas import (
    CountResponse,
    EnrollmentResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MonitoringFlag,
    RegisterRequest,
    Role,
    TokenResponse,
    User,
    UserCreate,
    UserPublic,
    UserQuery,
    UserUpdate,
    VerifySecondFactorRequest,
)
from security import TokenIssuer, hash_password
from two_factor import TwoFactorEngine
from users import UserRepository

logger = logging.getLogger(__name__)


def build_components(app: FastAPI, settings: Settings, db: Database) -> None:
    """Wire the service graph for one application instance onto ``app.state``."""
    users = UserRepository(db)
    mutation_log = MutationLog(db)
    flags = MonitoringFlags(db)
    broadcaster = Broadcaster(users, send_timeout=settings.broadcast_send_timeout)
    tokens = TokenIssuer(
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
        access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
        pending_ttl=timedelta(minutes=settings.pending_token_expire_minutes),
    )

    app.state.db = db
    app.state.flags = flags
    app.state.broadcaster = broadcaster
    app.state.directory = DirectoryService(users, mutation_log, broadcaster)
    app.state.auth = AuthService(users, tokens, TwoFactorEngine(issuer=settings.totp_issuer))
    app.state.monitor = ActivityMonitor(
        mutation_log,
        flags,
        interval=settings.monitor_interval_seconds,
        threshold=settings.monitor_threshold,
        window=timedelta(seconds=settings.monitor_window_seconds),
    )


def _field_errors(exc: RequestValidationError) -> List[Dict[str, str]]:
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors.append({"field": ".".join(loc) or "body", "message": err.get("msg", "Invalid value")})
    return errors


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"errors": _field_errors(exc)})

    @app.exception_handler(DirectoryError)
    async def directory_error_handler(request: Request, exc: DirectoryError):
        if isinstance(exc, ValidationFailed):
            content: Dict[str, Any] = {"errors": exc.errors}
        elif isinstance(exc, Conflict):
            content = {"errors": [{"field": exc.field, "message": exc.public_message}]}
        elif isinstance(exc, NotFound):
            content = {"error": exc.message}
        else:
            content = {"error": exc.public_message}
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    @app.exception_handler(PyMongoError)
    async def store_error_handler(request: Request, exc: PyMongoError):
        logger.error("Unhandled store failure on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=UpstreamFailure.status_code, content={"error": UpstreamFailure.public_message})


def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        store = db if db is not None else database.connect(settings)
        await run_in_threadpool(database.ensure_indexes, store)
        build_components(app, settings, store)
        if settings.monitor_enabled:
            app.state.monitor.start()
        try:
            yield
        finally:
            await app.state.monitor.stop()
            await app.state.broadcaster.close()
            if db is None:
                store.client.close()

    app = FastAPI(title="Directory Service", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_error_handlers(app)
    register_routes(app)
    return app


def user_query(
    name: Optional[str] = None,
    email: Optional[str] = None,
    role: Optional[Role] = None,
    sort: Optional[str] = None,
    order: Optional[str] = None,
    limit: int = Query(10, ge=0),
    offset: int = Query(0, ge=0),
) -> UserQuery:
    return UserQuery(name=name, email=email, role=role, sort=sort, order=order, limit=limit, offset=offset)


def register_routes(app: FastAPI) -> None:
    @app.get("/ping", response_class=PlainTextResponse)
    async def ping():
        return "pong"

    # Auth endpoints

    @app.post("/register", response_model=UserPublic, status_code=status.HTTP_201_CREATED)
    async def register(payload: RegisterRequest, directory: DirectoryService = Depends(get_directory)):
        password_hash = await run_in_threadpool(hash_password, payload.password)
        entry = UserCreate(**payload.model_dump(exclude={"password"}))
        return await directory.create(entry, actor_id=None, password_hash=password_hash)

    @app.post("/login", response_model=LoginResponse, response_model_exclude_none=True)
    async def login(payload: LoginRequest, auth: AuthService = Depends(get_auth)):
        result = await auth.login(str(payload.email), payload.password)
        if result.requires_two_factor:
            return LoginResponse(requires_two_factor=True, temp_token=result.pending_token)
        return LoginResponse(access_token=result.access_token, token_type="bearer", user=result.user)

    @app.post("/2fa/setup", response_model=EnrollmentResponse)
    async def setup_second_factor(token: str = Depends(bearer_token), auth: AuthService = Depends(get_auth)):
        enrollment = await auth.enroll_second_factor(token)
        return EnrollmentResponse(
            secret=enrollment.secret,
            qr_code=enrollment.qr_code,
            provisioning_uri=enrollment.provisioning_uri,
        )

    @app.post("/2fa/verify", response_model=TokenResponse)
    async def verify_second_factor(
        body: VerifySecondFactorRequest,
        token: str = Depends(bearer_token),
        auth: AuthService = Depends(get_auth),
    ):
        return TokenResponse(access_token=await auth.verify_second_factor(token, body.code))

    @app.get("/users/me", response_model=MeResponse)
    async def me(user: User = Depends(get_current_user)):
        return MeResponse(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            avatar=user.avatar,
            two_factor_enabled=user.mfa_enabled,
        )

    # Directory endpoints

    @app.get("/users/count", response_model=CountResponse)
    async def count_users(
        query: UserQuery = Depends(user_query), directory: DirectoryService = Depends(get_directory)
    ):
        return CountResponse(count=await directory.count(query))

    @app.get("/users", response_model=List[UserPublic])
    async def list_users(
        query: UserQuery = Depends(user_query), directory: DirectoryService = Depends(get_directory)
    ):
        return await directory.list(query)

    @app.get("/users/{user_id}", response_model=UserPublic)
    async def get_user(user_id: int, directory: DirectoryService = Depends(get_directory)):
        return await directory.get(user_id)

    @app.post("/users", response_model=UserPublic, status_code=status.HTTP_201_CREATED)
    async def create_user(
        payload: UserCreate,
        actor: int = Depends(actor_id),
        directory: DirectoryService = Depends(get_directory),
    ):
        return await directory.create(payload, actor_id=actor)

    @app.patch("/users/{user_id}", response_model=UserPublic)
    async def update_user(
        user_id: int,
        payload: UserUpdate,
        actor: int = Depends(actor_id),
        directory: DirectoryService = Depends(get_directory),
    ):
        return await directory.update(user_id, payload, actor_id=actor)

    @app.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_user(
        user_id: int,
        actor: int = Depends(actor_id),
        directory: DirectoryService = Depends(get_directory),
    ):
        await directory.delete(user_id, actor_id=actor)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # Monitoring

    @app.get("/monitored-users", response_model=List[MonitoringFlag], dependencies=[Depends(require_session)])
    async def monitored_users(flags: MonitoringFlags = Depends(get_flags)):
        return await run_in_threadpool(flags.list)

    # Live sync

    @app.websocket("/ws")
    async def observe(websocket: WebSocket):
        broadcaster: Broadcaster = websocket.app.state.broadcaster
        await websocket.accept()
        await broadcaster.connect(websocket)
        try:
            while True:
                # Inbound messages are ignored; reading surfaces the disconnect.
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.disconnect(websocket)


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)
