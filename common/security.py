import time, jwt
from typing import Dict, Optional
from common.schemas import AccountRef
from common.settings import settings

ALGO = "HS256"
INTERNAL_AUDIENCE = "credit-ledger"

def mint_user_jwt(sub: str, wallet_address: Optional[str] = None, claims: Optional[Dict] = None) -> str:
    """Token for an end user; sub is the user id, wallet the bound address"""
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": sub,
        "iat": now,
        "exp": now + settings.jwt_ttl_seconds,
        **(claims or {}),
    }
    if wallet_address:
        payload["wallet"] = wallet_address
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def mint_internal_jwt(aud: str = INTERNAL_AUDIENCE, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "aud": aud,
        "iat": now,
        "exp": now + settings.internal_jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    options = {"require": ["exp", "iat", "iss"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        options=options,
        issuer=settings.jwt_issuer,
    )

def account_from_token(token: str) -> AccountRef:
    """Credit accounts are keyed by (user, wallet); both claims are required"""
    claims = verify_token(token)
    if not claims.get("sub") or not claims.get("wallet"):
        raise jwt.MissingRequiredClaimError("wallet" if claims.get("sub") else "sub")
    return AccountRef(user_id=claims["sub"], wallet_address=claims["wallet"])
