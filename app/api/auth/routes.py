import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.db.models.user import User, utcnow
from app.api.auth.schemas import UserCreate, UserLogin, UserOut, Token
from app.core.hashing import Hasher
from app.core.security import create_access_token, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/register", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def register(user: UserCreate, db: Session = Depends(get_db)):
    existing = db.query(User).filter(or_(User.email == user.email, User.username == user.username)).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email or username already registered")

    new_user = User(
        email=user.email,
        username=user.username,
        hashed_password=Hasher.hash_password(user.password),
    )

    db.add(new_user)
    db.commit()
    db.refresh(new_user)
    logger.info("User registered: user_id=%s", new_user.id)
    return new_user


@router.post("/login", response_model=Token)
def login(user: UserLogin, db: Session = Depends(get_db)):
    db_user = db.query(User).filter(User.email == user.email).first()
    if not db_user or not db_user.is_active or not Hasher.verify_password(user.password, db_user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    db_user.last_login_at = utcnow()
    db.commit()

    token = create_access_token({"sub": db_user.id, "email": db_user.email})
    return {"access_token": token, "token_type": "bearer"}


@router.get("/me", response_model=UserOut)
def me(current_user: User = Depends(get_current_user)):
    return current_user
