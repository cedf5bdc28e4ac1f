"""
Authentication and authorization module for the church portal.
Handles JWT-based sessions, password hashing and role-gated dependencies.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from churchportal.config import get_jwt_expiration_minutes, get_jwt_secret
from churchportal.errors import AuthenticationError, AuthorizationError, ConflictError, ValidationError
from churchportal.models import Ministry, Role, User

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
BCRYPT_ROUNDS = 10

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class SessionClaims:
    """Caller identity taken from a verified session token."""
    user_id: int
    email: str
    role: Role
    ministry_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "usuarioID": self.user_id,
            "email": self.email,
            "rolID": int(self.role),
            "ministerioID": self.ministry_id,
        }


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> None:
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Email address is not valid")


def validate_password_strength(password: str) -> None:

    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long")

    # bcrypt only hashes the first 72 bytes
    if len(password.encode('utf-8')) > 72:
        raise ValidationError("Password must not exceed 72 bytes")

    if not re.search(r'[A-Z]', password):
        raise ValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[0-9]', password):
        raise ValidationError("Password must contain at least one numeric digit")


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    password_hash = bcrypt.hashpw(password.encode('utf-8'), salt)
    return password_hash.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_access_token(user: User) -> str:
    """Create a JWT session token carrying the caller's role and ministry."""
    now = datetime.utcnow()
    payload = {
        "usuarioID": user.user_id,
        "email": user.email,
        "rolID": user.role_id,
        "ministerioID": user.ministry_id,
        "exp": now + timedelta(minutes=get_jwt_expiration_minutes()),
        "iat": now,
    }
    return jwt.encode(payload, get_jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired", code="TOKEN_EXPIRED")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token", code="TOKEN_INVALID")


def claims_from_payload(payload: dict) -> SessionClaims:
    """Build session claims, rejecting payloads with missing or unknown values."""
    try:
        user_id = int(payload["usuarioID"])
        role = Role(int(payload["rolID"]))
        ministry_id = payload.get("ministerioID")
        ministry_id = int(ministry_id) if ministry_id is not None else None
    except (KeyError, TypeError, ValueError):
        raise AuthenticationError("Invalid token payload", code="TOKEN_INVALID")
    return SessionClaims(
        user_id=user_id,
        email=payload.get("email") or "",
        role=role,
        ministry_id=ministry_id,
    )


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> SessionClaims:
    """
    Dependency returning the caller's session claims.
    The token's claims are trusted as issued; the user row is not re-read.
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Access denied. No token provided.", code="TOKEN_MISSING")
    return claims_from_payload(decode_token(credentials.credentials))


def require_role(*roles: Role):
    """Dependency factory restricting a route to the given roles."""
    def role_checker(claims: SessionClaims = Depends(get_current_user)) -> SessionClaims:
        if claims.role not in roles:
            logger.warning("Access denied: user %s with role %s requires one of %s",
                           claims.user_id, claims.role.name, [r.name for r in roles])
            raise AuthorizationError("Access denied. Insufficient role for this operation.")
        return claims
    return role_checker


require_admin = require_role(Role.GENERAL_ADMIN)


def ensure_ministry(db: Session, ministry_id: Optional[int]) -> None:
    if ministry_id is not None and db.get(Ministry, ministry_id) is None:
        raise ValidationError(f"Ministry {ministry_id} does not exist")


def register_user(db: Session, name: str, email: str, password: str,
                  role: Role = Role.STANDARD_USER, ministry_id: Optional[int] = None) -> User:
    """Register a new user after validating email and password strength."""
    email = normalize_email(email)
    validate_email(email)
    validate_password_strength(password)

    existing_user = db.query(User).filter(User.email == email).first()
    if existing_user:
        raise ConflictError("Email is already registered")

    ensure_ministry(db, ministry_id)

    new_user = User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        role_id=int(role),
        ministry_id=ministry_id,
    )
    db.add(new_user)
    db.commit()
    db.refresh(new_user)
    logger.info("Registered user %s (id %s, role %s)", email, new_user.user_id, role.name)
    return new_user


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
    """Authenticate user credentials and return user if valid."""
    user = db.query(User).filter(User.email == normalize_email(email)).first()
    if not user:
        return None

    if not verify_password(password, user.password_hash):
        return None

    return user


def get_client_ip(request: Request) -> str:
    """Extract client IP address from request."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
