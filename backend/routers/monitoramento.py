from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from db import get_db
from models.models import User
from schemas.schemas import MonitoramentoStart, MonitoringStatus
from services.monitor_service import MonitorRegistry
from routers.auth import get_current_user
from routers.empresas import get_empresa_for_user

router = APIRouter(prefix="/monitoramento", tags=["monitoramento"])


def get_registry(request: Request) -> MonitorRegistry:
    return request.app.state.monitors


def _owned_monitor(referencia: str, registry: MonitorRegistry, db: Session, user: User):
    monitor = registry.monitor(referencia)
    if monitor is None:
        raise HTTPException(status_code=404, detail="Nenhum monitoramento para esta referência")
    get_empresa_for_user(db, monitor.owner_id, user)
    return monitor


@router.post("/", response_model=MonitoringStatus)
async def start_monitoring(data: MonitoramentoStart,
                           registry: MonitorRegistry = Depends(get_registry),
                           db: Session = Depends(get_db),
                           current_user: User = Depends(get_current_user)):
    """Start polling Focus NFe for `referencia`; returns after the first query."""
    empresa = get_empresa_for_user(db, data.empresa_id, current_user)
    options = {k: v for k, v in (("max_attempts", data.max_attempts),
                                 ("interval_s", data.interval_s)) if v is not None}
    return await registry.start(data.referencia, empresa.id, **options)


@router.get("/{referencia}", response_model=MonitoringStatus)
async def get_monitoring(referencia: str,
                         registry: MonitorRegistry = Depends(get_registry),
                         db: Session = Depends(get_db),
                         current_user: User = Depends(get_current_user)):
    return _owned_monitor(referencia, registry, db, current_user).snapshot()


@router.delete("/{referencia}", response_model=MonitoringStatus)
async def stop_monitoring(referencia: str,
                          registry: MonitorRegistry = Depends(get_registry),
                          db: Session = Depends(get_db),
                          current_user: User = Depends(get_current_user)):
    return _owned_monitor(referencia, registry, db, current_user).stop()
