"""
Caller identity and password hashing.

Every service call receives an explicit Identity; nothing reads the
session implicitly.
"""
import uuid
from dataclasses import dataclass

from passlib.context import CryptContext

from app.core.config import settings
from app.db.models import PlatformRole, User

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.BCRYPT_ROUNDS,
)


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as resolved from the session"""

    user_id: uuid.UUID
    email: str
    platform_role: PlatformRole = PlatformRole.USER

    @property
    def is_super_admin(self) -> bool:
        return self.platform_role == PlatformRole.SUPER_ADMIN

    @classmethod
    def from_user(cls, user: User) -> "Identity":
        return cls(
            user_id=user.id,
            email=user.email,
            platform_role=user.platform_role or PlatformRole.USER,
        )


def hash_password(password: str) -> str:
    """Bcrypt hash of a plaintext password"""
    return pwd_context.hash(password)


def verify_password(password: str, hashed_password: str | None) -> bool:
    """Check a plaintext password against a stored hash; unknown formats never match"""
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(password, hashed_password)
    except ValueError:
        # Not a hash this context recognises
        return False
