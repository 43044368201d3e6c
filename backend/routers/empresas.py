from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from typing import List
from db import get_db
from models.models import Empresa, User, UserRole
from schemas.schemas import EmpresaCreate, EmpresaUpdate, EmpresaOut
from routers.auth import get_current_user

router = APIRouter(prefix="/empresas", tags=["empresas"])


def _digits(value: str) -> str:
    return "".join(c for c in value or "" if c.isdigit())


def get_empresa_for_user(db: Session, empresa_id: int, user: User) -> Empresa:
    """Admins see every company, everyone else only the ones they registered."""
    empresa = db.query(Empresa).filter(Empresa.id == empresa_id).first()
    if not empresa or (user.role != UserRole.admin and empresa.user_id != user.id):
        raise HTTPException(status_code=404, detail="Empresa não encontrada")
    return empresa


@router.post("/", response_model=EmpresaOut)
async def create_empresa(data: EmpresaCreate, db: Session = Depends(get_db),
                         current_user: User = Depends(get_current_user)):
    cnpj = _digits(data.cnpj)
    if len(cnpj) != 14:
        raise HTTPException(status_code=400, detail="CNPJ deve ter 14 dígitos")
    if db.query(Empresa).filter(Empresa.cnpj == cnpj).first():
        raise HTTPException(status_code=400, detail="CNPJ já cadastrado")
    empresa = Empresa(**data.model_dump(exclude={"cnpj"}), cnpj=cnpj, user_id=current_user.id)
    db.add(empresa)
    db.commit()
    db.refresh(empresa)
    return EmpresaOut.from_model(empresa)


@router.get("/", response_model=List[EmpresaOut])
async def list_empresas(db: Session = Depends(get_db),
                        current_user: User = Depends(get_current_user)):
    q = db.query(Empresa)
    if current_user.role != UserRole.admin:
        q = q.filter(Empresa.user_id == current_user.id)
    return [EmpresaOut.from_model(e) for e in q.order_by(Empresa.razao_social).all()]


@router.get("/{empresa_id}", response_model=EmpresaOut)
async def get_empresa(empresa_id: int, db: Session = Depends(get_db),
                      current_user: User = Depends(get_current_user)):
    return EmpresaOut.from_model(get_empresa_for_user(db, empresa_id, current_user))


@router.put("/{empresa_id}", response_model=EmpresaOut)
async def update_empresa(empresa_id: int, data: EmpresaUpdate, request: Request,
                         db: Session = Depends(get_db),
                         current_user: User = Depends(get_current_user)):
    empresa = get_empresa_for_user(db, empresa_id, current_user)
    for k, v in data.model_dump(exclude_unset=True).items():
        setattr(empresa, k, v)
    db.commit()
    db.refresh(empresa)
    # tokens or environment may have changed
    request.app.state.credentials.invalidate(empresa.id)
    return EmpresaOut.from_model(empresa)
