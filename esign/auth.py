from typing import Optional
from fastapi import Depends, Header, HTTPException, Query, status

from .deps import Services, get_services
from .models import User
from .repository import Repository
from .utils import new_session_token


def register_owner(repo: Repository, email: str, name: str = "") -> User:
    """Create a document owner with a fresh API access token."""
    return repo.create(User(email=email.strip().lower(), name=name, access_token=new_session_token()))


def current_owner(
    x_access_token: Optional[str] = Header(default=None, alias="X-Access-Token"),
    token: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
) -> User:
    candidate = x_access_token or token
    if not candidate:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing access token")
    user = services.repo.first(User, access_token=candidate)
    if user is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid access token")
    return user
