from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt

from ordering.models import Role


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: Role = Role.CUSTOMER
    name: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role == Role.STAFF


def decode_subject(token: str, secret: str, algorithm: str) -> str:
    claims = jwt.decode(token, secret, algorithms=[algorithm])
    subject = claims.get("sub")
    if not subject:
        raise JWTError("token has no subject")
    return subject


def resolve_principal(store, user_id: str) -> Principal:
    # Role lives in the customers table, never in the token.
    customer = store.get_customer(user_id)
    if customer is None:
        return Principal(user_id=user_id)
    return Principal(user_id=user_id, role=customer.role, name=customer.name)


def verify_token(request: Request, authorization: Optional[str] = Header(None)) -> str:
    settings = request.app.state.settings
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        return decode_subject(token, settings.jwt_secret, settings.jwt_algorithm)
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def get_principal(request: Request, user_id: str = Depends(verify_token)) -> Principal:
    return resolve_principal(request.app.state.store, user_id)


def require_staff(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_staff:
        raise HTTPException(status_code=403, detail="Forbidden: Admins only")
    return principal
