import time, jwt
from dataclasses import dataclass
from typing import Dict, Optional
from common.settings import settings

ALGO = "HS256"
ADMIN_SCOPE = "admin"
USER_SCOPE = "user"

@dataclass(frozen=True)
class Requester:
    """The authenticated caller of an escrow operation."""
    user_id: str
    is_admin: bool = False

def _sign(claims: Dict, ttl_seconds: int) -> str:
    now = int(time.time())
    payload = {"iss": settings.jwt_issuer, "iat": now, "exp": now + ttl_seconds, **claims}
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def mint_user_jwt(sub: str, claims: Optional[Dict] = None) -> str:
    """Buyer, vendor or admin token; `scope` defaults to a plain user."""
    return _sign({"sub": sub, "scope": USER_SCOPE, **(claims or {})}, settings.jwt_ttl_seconds)

def mint_internal_jwt(aud: str, claims: Optional[Dict] = None) -> str:
    """Short-lived service token, only accepted by routes expecting `aud`."""
    return _sign({"aud": aud, **(claims or {})}, settings.internal_jwt_ttl_seconds)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        issuer=settings.jwt_issuer,
        options={"require": ["exp", "iat", "iss"]},
    )

def requester_from_claims(claims: Dict) -> Requester:
    sub = claims.get("sub")
    if not sub:
        raise jwt.InvalidTokenError("token has no subject")
    return Requester(user_id=str(sub), is_admin=claims.get("scope") == ADMIN_SCOPE)
