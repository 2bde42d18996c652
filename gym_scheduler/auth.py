# auth.py
# Tokens are issued by the identity service; this module only reads them.

from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from gym_scheduler import config

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token", auto_error=False)


# Pydantic Models
class Principal(BaseModel):
    id: int
    is_admin: bool = False
    is_suspended: bool = False


def decode_principal(token: Optional[str]) -> Principal:
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            raise credentials_exception
        return Principal(
            id=int(subject),
            is_admin=bool(payload.get("admin", False)),
            is_suspended=bool(payload.get("suspended", False)),
        )
    except (JWTError, ValueError):
        raise credentials_exception


# Used for API calls
async def get_current_principal(token: Optional[str] = Depends(oauth2_scheme)) -> Principal:
    return decode_principal(token)


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    return principal
