from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from fastapi.security import OAuth2PasswordRequestForm

from ..db import schemas
from ..deps.db import get_db
from ..controllers import auth_controller

router = APIRouter()


@router.post("/auth/register", response_model=schemas.Token, status_code=status.HTTP_201_CREATED)
def register_user(body: schemas.RegisterIn, db: Session = Depends(get_db)):
    return auth_controller.register_user(db, body)


@router.post("/token", response_model=schemas.Token)
def login_for_access_token(db: Session = Depends(get_db), form_data: OAuth2PasswordRequestForm = Depends()):
    return auth_controller.login(db, form_data.username, form_data.password)
