"""
Identity gate and role resolver

Every mutating route depends on `get_identity`; admin-scoped routes depend on
`require_admin`, which always checks the authenticated caller, never an email
taken from the path or body.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, Header, Request
from jose import JWTError, jwt
from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database

from config import Settings
from database import store_guard
from errors import Forbidden, Unauthenticated

logger = structlog.get_logger(component="auth")

_email_claim = TypeAdapter(EmailStr)


@dataclass(frozen=True)
class Identity:
    email: str
    claims: Dict[str, Any]


class JWTIdentityProvider:
    """Verifies bearer tokens signed by the identity provider and returns claims"""

    def __init__(self, secret: str, algorithm: str = "HS256", audience: Optional[str] = None):
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience

    @classmethod
    def from_settings(cls, settings: Settings) -> "JWTIdentityProvider":
        return cls(settings.JWT_SECRET, settings.JWT_ALGORITHM, settings.JWT_AUDIENCE)

    def verify(self, token: str) -> Dict[str, Any]:
        options = {"verify_aud": self.audience is not None}
        # raises JWTError on bad signature, expiry or audience
        return jwt.decode(
            token,
            self.secret,
            algorithms=[self.algorithm],
            audience=self.audience,
            options=options,
        )


class IdentityGate:
    def __init__(self, provider):
        self.provider = provider

    def authenticate(self, authorization: Optional[str]) -> Identity:
        if not authorization:
            raise Unauthenticated("Missing Authorization header")
        scheme, _, token = authorization.strip().partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise Unauthenticated("Malformed Authorization header")
        try:
            claims = self.provider.verify(token)
        except JWTError as e:
            logger.info("access_denied", reason="token_rejected", error=str(e))
            raise Forbidden("Invalid token")
        email = claims.get("email")
        if not email or not isinstance(email, str):
            logger.info("access_denied", reason="missing_email_claim")
            raise Forbidden("Invalid token")
        try:
            email = _email_claim.validate_python(email)
        except PydanticValidationError:
            logger.info("access_denied", reason="malformed_email_claim")
            raise Forbidden("Invalid token")
        return Identity(email=email.lower(), claims=claims)


class RoleResolver:
    def __init__(self, db: Database):
        self.users = db["users"]

    def role_of(self, email: str) -> Optional[str]:
        with store_guard("role_lookup"):
            user = self.users.find_one({"email": email}, {"role": 1})
        if user is None:
            return None
        return user.get("role")

    def is_admin(self, identity: Identity) -> bool:
        return self.role_of(identity.email) == "admin"

    def require_admin(self, identity: Identity) -> Identity:
        # fails closed: missing user or any role other than exactly "admin"
        if not self.is_admin(identity):
            logger.info("access_denied", reason="not_admin", email=identity.email)
            raise Forbidden("Admins only")
        return identity

    def require_self_or_admin(self, identity: Identity, email: str) -> Identity:
        if identity.email == email.lower():
            return identity
        return self.require_admin(identity)


def get_identity(request: Request, authorization: Optional[str] = Header(None)) -> Identity:
    return IdentityGate(request.app.state.identity_provider).authenticate(authorization)


def get_role_resolver(request: Request) -> RoleResolver:
    return RoleResolver(request.app.state.db)


def require_admin(
    identity: Identity = Depends(get_identity),
    roles: RoleResolver = Depends(get_role_resolver),
) -> Identity:
    return roles.require_admin(identity)
