from fastapi import Header, HTTPException, Depends
from jose import jwt, JWTError, ExpiredSignatureError

from ..config import JWT_SECRET, JWT_ISSUER, JWT_AUDIENCE
from ..policy import Actor, Role

ALGO = "HS256"


def require_user(authorization: str = Header(default=None)) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    try:
        options = {"verify_aud": bool(JWT_AUDIENCE)}
        claims = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[ALGO],
            audience=JWT_AUDIENCE,
            issuer=JWT_ISSUER,
            options=options,
        )
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return claims


def actor_from_claims(claims: dict) -> Actor:
    role = claims.get("role")
    if role == Role.ADMIN.value or claims.get("is_admin"):
        return Actor(user_id=str(claims["sub"]), role=Role.ADMIN)
    return Actor(user_id=str(claims["sub"]), role=Role.CLIENT)


def current_actor(claims: dict = Depends(require_user)) -> Actor:
    return actor_from_claims(claims)


def require_admin(actor: Actor = Depends(current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="Admin only")
    return actor
