import io
import csv
import logging
import uuid
from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional
from db import get_db
from models.models import (User, UserRole, Empresa, NotaFiscalServico, NFSeStatus,
                           HistoricoCancelamento, CancelamentoStatus)
from schemas.schemas import (NotaFiscalServicoOut, NFSeXmlData, EmissaoNFSe, EmissaoResultado,
                             CancelamentoRequest, CancelamentoOut)
from services.xml_service import parse_nfse_xml
from services.focus_service import CredentialError, FocusAPIError
from services.persist_service import PersistenceError
from routers.auth import get_current_user
from routers.empresas import get_empresa_for_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notas", tags=["notas"])

_XML_TYPES = {"application/xml", "text/xml"}


def _visible_notas(db: Session, user: User):
    q = db.query(NotaFiscalServico)
    if user.role != UserRole.admin:
        q = q.join(Empresa, NotaFiscalServico.empresa_id == Empresa.id).filter(Empresa.user_id == user.id)
    return q


def _filtered(db: Session, user: User, status: Optional[NFSeStatus], empresa_id: Optional[int],
              data_inicio: Optional[datetime], data_fim: Optional[datetime]):
    q = _visible_notas(db, user)
    if status:
        q = q.filter(NotaFiscalServico.status == status)
    if empresa_id:
        q = q.filter(NotaFiscalServico.empresa_id == empresa_id)
    if data_inicio:
        q = q.filter(NotaFiscalServico.data_emissao >= data_inicio)
    if data_fim:
        q = q.filter(NotaFiscalServico.data_emissao <= data_fim)
    return q.order_by(NotaFiscalServico.updated_at.desc())


def _get_nota(db: Session, user: User, referencia: str) -> NotaFiscalServico:
    nota = _visible_notas(db, user).filter(NotaFiscalServico.referencia == referencia).first()
    if not nota:
        raise HTTPException(status_code=404, detail="Nota não encontrada")
    return nota


@router.post("/xml", response_model=NFSeXmlData)
async def parse_uploaded_xml(file: UploadFile = File(...),
                             _: User = Depends(get_current_user)):
    """Extract the NFS-e fields of an uploaded XML; nothing is stored."""
    ct = (file.content_type or "").lower()
    if ct not in _XML_TYPES and not (file.filename or "").lower().endswith(".xml"):
        raise HTTPException(status_code=400, detail="Formato não suportado. Envie o XML da NFSe")
    return parse_nfse_xml(await file.read())


@router.get("/export/csv")
async def export_csv(status: Optional[NFSeStatus] = None,
                     empresa_id: Optional[int] = None,
                     data_inicio: Optional[datetime] = None,
                     data_fim: Optional[datetime] = None,
                     db: Session = Depends(get_db),
                     current_user: User = Depends(get_current_user)):
    notas = _filtered(db, current_user, status, empresa_id, data_inicio, data_fim).all()
    output = io.StringIO()
    writer = csv.writer(output, delimiter=";")
    writer.writerow(["Referência", "Número", "Status", "Data Emissão", "Prestador CNPJ",
                     "Tomador", "Valor Serviços", "Valor ISS", "Valor Líquido"])
    for n in notas:
        writer.writerow([n.referencia, n.numero, n.status.value,
                         n.data_emissao.isoformat() if n.data_emissao else "",
                         n.prestador_cnpj, n.tomador_razao_social,
                         f"{n.valor_servicos or 0:.2f}", f"{n.valor_iss or 0:.2f}",
                         f"{n.valor_liquido or 0:.2f}"])
    output.seek(0)
    return StreamingResponse(
        io.BytesIO(output.getvalue().encode("utf-8-sig")),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=nfse.csv"},
    )


@router.get("/", response_model=List[NotaFiscalServicoOut])
async def list_notas(skip: int = 0, limit: int = 50,
                     status: Optional[NFSeStatus] = None,
                     empresa_id: Optional[int] = None,
                     data_inicio: Optional[datetime] = None,
                     data_fim: Optional[datetime] = None,
                     db: Session = Depends(get_db),
                     current_user: User = Depends(get_current_user)):
    q = _filtered(db, current_user, status, empresa_id, data_inicio, data_fim)
    return q.offset(skip).limit(limit).all()


def _nova_referencia(empresa_id: int) -> str:
    return f"{empresa_id}-{datetime.now():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:6]}"


@router.post("/emitir", response_model=EmissaoResultado)
async def emitir_nota(data: EmissaoNFSe, request: Request,
                      db: Session = Depends(get_db),
                      current_user: User = Depends(get_current_user)):
    """Send the RPS to Focus NFe; unless it is final right away, poll it with the monitor."""
    empresa = get_empresa_for_user(db, data.empresa_id, current_user)
    referencia = data.referencia or _nova_referencia(empresa.id)
    if db.query(NotaFiscalServico).filter(NotaFiscalServico.referencia == referencia).first():
        raise HTTPException(status_code=400, detail="Referência já utilizada")

    state = request.app.state
    result = await state.focus.emit(referencia, empresa.id, data.dados)
    if result.kind == "error":
        code = 422 if result.http_status and 400 <= result.http_status < 500 else 502
        raise HTTPException(status_code=code, detail={"mensagem": result.message,
                                                      "erros": result.payload.get("erros", [])})

    # the emission body carries tomador/servico, the provider answer only the status
    payload = {**data.dados, **result.payload}
    final = state.persister.vocabulary.is_terminal(result.status)
    try:
        await run_in_threadpool(state.persister.save, referencia, payload, empresa.id)
    except PersistenceError as e:
        logger.error(str(e))
        if final:
            raise HTTPException(status_code=500,
                                detail=f"NFSe {result.status}, mas não foi possível salvar")

    if final:
        return EmissaoResultado(referencia=referencia, status_provedor=result.status)
    options = {k: v for k, v in (("max_attempts", data.max_attempts),
                                 ("interval_s", data.interval_s)) if v is not None}
    monitoramento = await state.monitors.start(referencia, empresa.id, **options)
    return EmissaoResultado(referencia=referencia, status_provedor=result.status,
                            monitoramento=monitoramento)


@router.get("/cancelamentos", response_model=List[CancelamentoOut])
async def list_cancelamentos(empresa_id: Optional[int] = None, limit: int = 50,
                             db: Session = Depends(get_db),
                             current_user: User = Depends(get_current_user)):
    q = db.query(HistoricoCancelamento)
    if current_user.role != UserRole.admin:
        q = q.join(Empresa, HistoricoCancelamento.empresa_id == Empresa.id).filter(
            Empresa.user_id == current_user.id)
    if empresa_id:
        q = q.filter(HistoricoCancelamento.empresa_id == empresa_id)
    return q.order_by(HistoricoCancelamento.data_cancelamento.desc(),
                      HistoricoCancelamento.id.desc()).limit(limit).all()


@router.get("/{referencia}", response_model=NotaFiscalServicoOut)
async def get_nota(referencia: str, db: Session = Depends(get_db),
                   current_user: User = Depends(get_current_user)):
    return _get_nota(db, current_user, referencia)


@router.get("/{referencia}/xml", response_model=NFSeXmlData)
async def get_nota_xml(referencia: str, request: Request,
                       db: Session = Depends(get_db),
                       current_user: User = Depends(get_current_user)):
    """Return the XML fields, downloading the XML from Focus NFe the first time."""
    nota = _get_nota(db, current_user, referencia)
    if nota.xml:
        return parse_nfse_xml(nota.xml)
    if not nota.caminho_xml_nota_fiscal:
        raise HTTPException(status_code=404, detail="XML da NFSe não disponível")

    try:
        xml = await request.app.state.focus.download_xml(nota.caminho_xml_nota_fiscal, nota.empresa_id)
    except CredentialError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FocusAPIError as e:
        logger.warning(f"Falha ao baixar XML da NFSe {referencia}: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    try:
        await run_in_threadpool(request.app.state.persister.attach_xml, referencia, xml)
    except PersistenceError as e:
        # the XML is still returned; it will be downloaded again next time
        logger.error(str(e))
    return parse_nfse_xml(xml)


def _mensagens_erro(payload) -> Optional[str]:
    erros = payload.get("erros") or []
    return "; ".join(e.get("mensagem", "") for e in erros if isinstance(e, dict)) or payload.get("mensagem")


@router.delete("/{referencia}", response_model=CancelamentoOut)
async def cancelar_nota(referencia: str, data: CancelamentoRequest, request: Request,
                        db: Session = Depends(get_db),
                        current_user: User = Depends(get_current_user)):
    """Ask Focus NFe to cancel the NFS-e and record the attempt in the cancellation history."""
    nota = _get_nota(db, current_user, referencia)
    if nota.status == NFSeStatus.cancelado:
        raise HTTPException(status_code=400, detail="NFSe já cancelada")

    state = request.app.state
    result = await state.focus.cancel(referencia, nota.empresa_id, data.justificativa)
    historico = HistoricoCancelamento(
        referencia=referencia, numero_nfse=nota.numero, empresa_id=nota.empresa_id,
        usuario_id=current_user.id, motivo=data.motivo, justificativa=data.justificativa,
        status_provedor=result.status,
    )
    if result.kind == "error":
        historico.status = CancelamentoStatus.erro
        historico.mensagem_erro = _mensagens_erro(result.payload) or result.message
    else:
        classified = state.persister.vocabulary.classify(result.status)
        if classified == NFSeStatus.cancelado:
            historico.status = CancelamentoStatus.cancelado
            nota.status = NFSeStatus.cancelado
            nota.status_provedor = result.status
        elif classified == NFSeStatus.erro:
            historico.status = CancelamentoStatus.erro
            historico.mensagem_erro = _mensagens_erro(result.payload) or result.status
        else:
            historico.status = CancelamentoStatus.processando
    db.add(historico)
    db.commit()
    db.refresh(historico)
    logger.info(f"Cancelamento da NFSe {referencia}: {historico.status.value}")
    return historico
