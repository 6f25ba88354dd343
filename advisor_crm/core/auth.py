from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from advisor_crm.core.config import get_settings


ANONYMOUS_SUBJECT = "anonymous"
GUEST_ROLES = ("guest",)


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


def _guest() -> AuthUser:
    return AuthUser(sub=ANONYMOUS_SUBJECT, roles=list(GUEST_ROLES))


def _bearer_token(request: Request) -> str:
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return credentials.strip()


def decode_token(token: str) -> AuthUser:
    """Turn a signed bearer token into an ``AuthUser``.

    Pipeline permissions (``pipeline.opportunities.write`` and friends) travel
    in the ``roles`` claim. Tokens that fail verification, or carry no
    subject, fall back to the guest user.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return _guest()

    subject = payload.get("sub")
    if not subject:
        return _guest()

    roles = payload.get("roles", [])
    if isinstance(roles, str):
        roles = roles.split()
    if not isinstance(roles, list):
        roles = []
    return AuthUser(sub=str(subject), roles=sorted({str(role).strip() for role in roles if str(role).strip()}))


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        return _guest()
    return decode_token(token)
