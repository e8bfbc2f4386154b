from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

import config
from models import CurrentUser

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def decode_token(token: str) -> CurrentUser:
    """Verify a bearer JWT and return its identity. Raises JWTError or ValueError."""
    payload = jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    email = payload.get("email") or payload.get("sub")
    if not email:
        raise ValueError("token has no email or sub claim")
    return CurrentUser(id=str(payload.get("id") or payload.get("sub") or email), email=email)


async def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    """
    Validate the bearer token and return the caller.
    Every chat and task route depends on this; the core assumes a verified user.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        return decode_token(token)
    except (JWTError, ValueError):
        raise credentials_exception
