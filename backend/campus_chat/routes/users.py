from fastapi import APIRouter, Depends

from ..db import schemas
from ..deps.auth import get_current_user

router = APIRouter()


@router.get("/users/me", response_model=schemas.UserOut)
def read_users_me(current_user=Depends(get_current_user)):
    return current_user
