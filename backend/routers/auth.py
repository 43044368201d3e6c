"""
Login and user administration.

Tokens identify the user by id (`sub`); the role travels along only for the
frontend. Every request reloads the user, so deactivating someone or changing
their role takes effect immediately, without waiting for the token to expire.
"""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from sqlalchemy.orm import Session
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from jose import JWTError, jwt
from passlib.context import CryptContext
from db import get_db
from models.models import User, UserRole
from schemas.schemas import Token, UserCreate, UserOut, UserUpdate, SenhaUpdate
from config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES

router = APIRouter(prefix="/auth", tags=["auth"])
pwd_context = CryptContext(schemes=["sha256_crypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token")

_CREDENTIALS_EXC = HTTPException(status_code=401, detail="Token inválido ou expirado",
                                 headers={"WWW-Authenticate": "Bearer"})


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def authenticate(db: Session, email: str, password: str) -> Optional[User]:
    user = db.query(User).filter(User.email == email.strip().lower()).first()
    if user is None or not pwd_context.verify(password, user.hashed_password):
        return None
    return user


def create_access_token(user: User) -> str:
    expires = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    return jwt.encode({"sub": str(user.id), "email": user.email, "role": user.role.value,
                       "exp": expires}, SECRET_KEY, algorithm=ALGORITHM)


async def get_current_user(token: str = Depends(oauth2_scheme),
                           db: Session = Depends(get_db)) -> User:
    try:
        user_id = int(jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM]).get("sub"))
    except (JWTError, TypeError, ValueError):
        raise _CREDENTIALS_EXC
    user = db.get(User, user_id)
    if user is None or not user.ativo:
        raise _CREDENTIALS_EXC
    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != UserRole.admin:
        raise HTTPException(status_code=403, detail="Apenas administradores")
    return current_user


@router.post("/token", response_model=Token)
async def login(form: OAuth2PasswordRequestForm = Depends(),
                db: Session = Depends(get_db)):
    user = authenticate(db, form.username, form.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Credenciais inválidas")
    if not user.ativo:
        raise HTTPException(status_code=403, detail="Usuário desativado")
    return Token(access_token=create_access_token(user), token_type="bearer")


@router.get("/me", response_model=UserOut)
async def me(current: User = Depends(get_current_user)):
    return current


@router.put("/me/senha", status_code=204)
async def change_password(data: SenhaUpdate, db: Session = Depends(get_db),
                          current: User = Depends(get_current_user)):
    if not pwd_context.verify(data.senha_atual, current.hashed_password):
        raise HTTPException(status_code=400, detail="Senha atual incorreta")
    current.hashed_password = get_password_hash(data.nova_senha)
    db.commit()


@router.get("/users", response_model=List[UserOut])
async def list_users(db: Session = Depends(get_db), _: User = Depends(require_admin)):
    return db.query(User).order_by(User.email).all()


@router.post("/users", response_model=UserOut)
async def create_user(data: UserCreate, db: Session = Depends(get_db),
                      _: User = Depends(require_admin)):
    email = data.email.lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=400, detail="E-mail já cadastrado")
    user = User(email=email, hashed_password=get_password_hash(data.password), role=data.role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@router.patch("/users/{user_id}", response_model=UserOut)
async def update_user(user_id: int, data: UserUpdate, db: Session = Depends(get_db),
                      admin: User = Depends(require_admin)):
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="Usuário não encontrado")
    changes = data.model_dump(exclude_unset=True)
    # an admin cannot lock themselves out
    if user.id == admin.id and (changes.get("ativo") is False or changes.get("role") == UserRole.viewer):
        raise HTTPException(status_code=400, detail="Não é possível rebaixar ou desativar o próprio usuário")
    for k, v in changes.items():
        setattr(user, k, v)
    db.commit()
    db.refresh(user)
    return user
