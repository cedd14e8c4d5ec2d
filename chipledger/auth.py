from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from jose import JWTError, jwt

from .errors import UnauthorizedError
from .models import Identity, Role


class AuthenticationError(Exception):
    pass


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> Identity:
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
        return Identity(user_id=UUID(payload["sub"]), role=Role(payload.get("role", Role.PLAYER.value)))
    except (JWTError, KeyError, ValueError) as e:
        raise AuthenticationError("Invalid token") from e


def create_token(
    user_id: UUID,
    role: Role,
    secret: str,
    algorithm: str = "HS256",
    expires_in: timedelta = timedelta(minutes=60),
) -> str:
    """Sign a token the way the identity provider does. Local runs and tests only."""
    exp = datetime.now(timezone.utc) + expires_in
    return jwt.encode({"sub": str(user_id), "role": role.value, "exp": exp}, secret, algorithm=algorithm)


def require_admin(actor: Identity, action: Optional[str] = None) -> None:
    if not actor.is_admin:
        raise UnauthorizedError(
            f"Only admins may {action or 'perform this action'}", user_id=str(actor.user_id)
        )


def require_self_or_admin(actor: Identity, account_id: UUID) -> None:
    if not actor.is_admin and actor.user_id != account_id:
        raise UnauthorizedError(
            "Players may only act on their own account", user_id=str(actor.user_id)
        )
