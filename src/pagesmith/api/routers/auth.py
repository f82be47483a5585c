from __future__ import annotations

from fastapi import APIRouter, HTTPException, status, Depends, Request

from ...security.auth import (
    EmailAlreadyRegistered,
    InvalidCredentials,
    JwtConfig,
    LoginRequest,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
    User,
    authenticate,
    create_access_token,
    get_current_user,
    register_user,
)
from ...security.rate_limit import LOGIN_POLICY, REGISTER_POLICY, RatePolicy, RateLimitExceeded, limiter

router = APIRouter(prefix="/auth", tags=["auth"])


def _rate_limit_identifier(request: Request, email: str) -> str:
    host = request.client.host if request.client else "unknown"
    return f"{host}:{email.lower()}"


def _enforce(policy: RatePolicy, request: Request, email: str, message: str) -> None:
    try:
        limiter.hit(policy, _rate_limit_identifier(request, email))
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=message,
            headers={"Retry-After": str(exc.retry_after_seconds)},
        ) from exc


@router.post("/register", response_model=RegisterResponse, status_code=status.HTTP_201_CREATED)
def register(req: RegisterRequest, request: Request) -> RegisterResponse:
    _enforce(REGISTER_POLICY, request, req.email, "Too many registration attempts. Please try again later.")
    try:
        user = register_user(req.name, req.email, req.password)
    except EmailAlreadyRegistered:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User with this email already exists")
    return RegisterResponse(message="User created successfully", user=user)


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, request: Request) -> TokenResponse:
    _enforce(LOGIN_POLICY, request, req.email, "Too many login attempts. Please try again later.")
    try:
        user = authenticate(req.email, req.password)
    except InvalidCredentials as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    cfg = JwtConfig.from_env()
    token = create_access_token(user, cfg)
    return TokenResponse(access_token=token, expires_in=cfg.expires_min * 60, user=user)


@router.get("/me", response_model=User)
def me(user: User = Depends(get_current_user)) -> User:
    return user
