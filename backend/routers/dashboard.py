from collections import defaultdict
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import func
from datetime import datetime, timezone
from typing import Optional
from db import get_db
from models.models import NotaFiscalServico, NFSeStatus, User, UserRole, Empresa
from schemas.schemas import DashboardStats, MonthlyTotal
from routers.auth import get_current_user

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/stats", response_model=DashboardStats)
async def get_stats(empresa_id: Optional[int] = None,
                    meses: int = 12,
                    db: Session = Depends(get_db),
                    current_user: User = Depends(get_current_user)):
    now = datetime.now(timezone.utc)
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0, tzinfo=None)

    q = db.query(NotaFiscalServico)
    if current_user.role != UserRole.admin:
        q = q.join(Empresa, NotaFiscalServico.empresa_id == Empresa.id).filter(
            Empresa.user_id == current_user.id)
    if empresa_id:
        q = q.filter(NotaFiscalServico.empresa_id == empresa_id)

    authorized = q.filter(NotaFiscalServico.status == NFSeStatus.autorizado)

    total_autorizado = authorized.with_entities(
        func.sum(NotaFiscalServico.valor_servicos)).scalar() or 0.0
    total_mes = authorized.filter(NotaFiscalServico.data_emissao >= month_start).with_entities(
        func.sum(NotaFiscalServico.valor_servicos)).scalar() or 0.0

    por_status = {s.value: 0 for s in NFSeStatus}
    for status, count in q.with_entities(NotaFiscalServico.status,
                                         func.count(NotaFiscalServico.id)).group_by(
                                             NotaFiscalServico.status).all():
        por_status[status.value] = count

    # Bucketed in Python: strftime/date_trunc differ between SQLite and PostgreSQL
    buckets = defaultdict(float)
    for data_emissao, valor in authorized.with_entities(NotaFiscalServico.data_emissao,
                                                        NotaFiscalServico.valor_servicos).all():
        if data_emissao:
            buckets[data_emissao.strftime("%Y-%m")] += valor or 0.0
    por_mes = [MonthlyTotal(mes=mes, total=round(total, 2))
               for mes, total in sorted(buckets.items())[-meses:]]

    return DashboardStats(
        total_mes=round(total_mes, 2),
        total_autorizado=round(total_autorizado, 2),
        total_documentos=sum(por_status.values()),
        por_status=por_status,
        por_mes=por_mes,
    )
