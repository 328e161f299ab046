from datetime import datetime, timedelta
from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from coursecompass.config import get_settings
from coursecompass.database import get_db
from coursecompass.models.user import User, UserRole
from coursecompass.schemas.user import TokenPayload

security = HTTPBearer(auto_error=False)

ACCESS_TOKEN_COOKIE = "token"
REFRESH_TOKEN_COOKIE = "refresh_token"

INSTRUCTOR_ROLES = (UserRole.TRAINER.value, UserRole.ADMIN.value)

# Use Argon2 for password hashing
pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(plain, hashed)


def _encode(user: User, token_type: str, expire: datetime, secret: str) -> str:
    payload = {
        "sub": user.id,
        "email": user.email,
        "role": user.role,
        "exp": expire,
        "type": token_type,
    }
    return jwt.encode(payload, secret, algorithm=get_settings().algorithm)


def create_access_token(user: User) -> str:
    settings = get_settings()
    expire = datetime.utcnow() + timedelta(minutes=settings.access_token_expire_minutes)
    return _encode(user, "access", expire, settings.secret_key)


def create_refresh_token(user: User) -> str:
    settings = get_settings()
    expire = datetime.utcnow() + timedelta(days=settings.refresh_token_expire_days)
    return _encode(user, "refresh", expire, settings.refresh_secret_key)


def _decode(token: str, secret: str, expected_type: str) -> TokenPayload | None:
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[get_settings().algorithm],
        )
        decoded = TokenPayload(
            sub=payload["sub"],
            email=payload["email"],
            role=payload.get("role", ""),
            exp=payload["exp"],
            type=payload.get("type", "access"),
        )
    except (JWTError, KeyError):
        return None
    if decoded.type != expected_type:
        return None
    return decoded


def decode_token(token: str) -> TokenPayload | None:
    return _decode(token, get_settings().secret_key, "access")


def decode_refresh_token(token: str) -> TokenPayload | None:
    return _decode(token, get_settings().refresh_secret_key, "refresh")


def extract_token(request: Request, credentials: HTTPAuthorizationCredentials | None = None) -> str | None:
    """Bearer header first, then the `token` cookie."""
    if credentials and credentials.credentials:
        return credentials.credentials
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(ACCESS_TOKEN_COOKIE)


def get_optional_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User | None:
    """Current user or None. For routes with public and private content (file serving)."""
    token = extract_token(request, credentials)
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    return db.query(User).filter(User.id == payload.sub).first()


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    token = extract_token(request, credentials)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(token)

    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = db.query(User).filter(User.id == payload.sub).first()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    return user


def get_current_instructor(
    user: User = Depends(get_current_user),
) -> User:
    """User must be logged in with TRAINER or ADMIN role."""
    if user.role not in INSTRUCTOR_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Instructor access required",
        )
    return user


def get_current_user_admin(
    user: User = Depends(get_current_user),
) -> User:
    """User must be logged in and have ADMIN role."""
    if user.role != UserRole.ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admin can access.",
        )
    return user
