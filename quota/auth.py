from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from quota.config import cfg
from quota.plan_limits import DEFAULT_PLAN

SECRET_KEY = str(cfg.get("auth.secret_key", "change-me-quota-secret") or "change-me-quota-secret")
ALGORITHM = str(cfg.get("auth.algorithm", "HS256") or "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24

_bearer = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, plan: str = DEFAULT_PLAN, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    payload = {"sub": str(user_id), "plan": str(plan or DEFAULT_PLAN), "exp": expire}
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, str]:
    """Identity claims from a bearer token. Plan comes from the billing side, not from this service."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token missing subject")
    return {
        "user_id": user_id[:255],
        "plan": str(payload.get("plan") or DEFAULT_PLAN)[:50],
    }


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)) -> Dict[str, str]:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_token(credentials.credentials)
