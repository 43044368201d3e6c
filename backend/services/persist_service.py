"""
Persists the final provider answer for an NFS-e as a NotaFiscalServico row.

The row is keyed by the Focus NFe reference: saving the same reference twice
updates the existing row, it never creates a second one.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from db import SessionLocal
from models.models import NotaFiscalServico
from services.nfse_status import StatusVocabulary
from services.xml_service import parse_nfse_xml

logger = logging.getLogger(__name__)

_XML_KEYS = ("xml", "xml_nota_fiscal", "xml_nfse")


class PersistenceError(Exception):
    pass


def _first(*values):
    # Zero counts as missing: the XML extractor defaults absent amounts to 0.0
    for v in values:
        if v not in (None, "", 0):
            return v
    return None


def _money(val) -> Optional[float]:
    if val in (None, ""):
        return None
    if isinstance(val, (int, float)):
        return float(val)
    s = str(val).strip()
    if "," in s:
        s = s.replace(".", "").replace(",", ".")
    try:
        return float(s)
    except ValueError:
        return None


def _parse_date(val: Optional[str]) -> Optional[datetime]:
    if not val:
        return None
    for candidate in (val, val[:19]):
        try:
            return datetime.fromisoformat(candidate)
        except ValueError:
            continue
    return None


def map_payload(payload: Dict[str, Any], vocabulary: StatusVocabulary) -> Dict[str, Any]:
    """Flatten a Focus NFe response (plus its XML, if embedded) into NotaFiscalServico columns."""
    prestador = payload.get("prestador") or {}
    tomador = payload.get("tomador") or {}
    servico = payload.get("servico") or {}
    xml = next((payload[k] for k in _XML_KEYS if isinstance(payload.get(k), str)), None)
    x = parse_nfse_xml(xml)

    valor_servicos = _money(_first(servico.get("valor_servicos"), payload.get("valor_servicos"),
                                   x.servico_valor_servicos))
    return {
        "status": vocabulary.classify(payload.get("status")),
        "status_provedor": vocabulary.normalize(payload.get("status")),
        "numero": _first(payload.get("numero"), x.numero),
        "codigo_verificacao": _first(payload.get("codigo_verificacao"), x.codigo_verificacao),
        "data_emissao": _parse_date(_first(payload.get("data_emissao"), x.data_emissao)),
        "prestador_cnpj": _first(payload.get("cnpj_prestador"), prestador.get("cnpj"), x.prestador_cnpj),
        "prestador_razao_social": _first(prestador.get("razao_social"),
                                         payload.get("razao_social_prestador"),
                                         x.prestador_razao_social),
        "tomador_cpf_cnpj": _first(tomador.get("cnpj"), tomador.get("cpf"), x.tomador_cpf_cnpj),
        "tomador_razao_social": _first(tomador.get("razao_social"), x.tomador_razao_social),
        "tomador_email": _first(tomador.get("email"), x.tomador_email),
        "discriminacao": _first(servico.get("discriminacao"), payload.get("discriminacao"),
                                x.servico_discriminacao),
        "codigo_servico": _first(servico.get("codigo_servico"), servico.get("item_lista_servico"),
                                 x.servico_item_lista_servico),
        "aliquota_iss": _money(_first(servico.get("aliquota_iss"), servico.get("aliquota"),
                                      x.servico_aliquota, x.aliquota)),
        "valor_servicos": valor_servicos,
        "valor_liquido": _money(_first(servico.get("valor_liquido"), payload.get("valor_liquido"),
                                       x.valor_liquido_nfse, valor_servicos)),
        "valor_iss": _money(_first(servico.get("valor_iss"), x.servico_valor_iss, x.valor_iss)),
        "valor_deducoes": _money(_first(servico.get("valor_deducoes"), x.servico_valor_deducoes)),
        "valor_pis": _money(_first(servico.get("valor_pis"), x.servico_valor_pis)),
        "valor_cofins": _money(_first(servico.get("valor_cofins"), x.servico_valor_cofins)),
        "valor_inss": _money(_first(servico.get("valor_inss"), x.servico_valor_inss)),
        "valor_ir": _money(_first(servico.get("valor_ir"), x.servico_valor_ir)),
        "valor_csll": _money(_first(servico.get("valor_csll"), x.servico_valor_csll)),
        "url": payload.get("url"),
        "url_danfse": _first(payload.get("url_danfse"), payload.get("url_pdf")),
        "caminho_xml_nota_fiscal": payload.get("caminho_xml_nota_fiscal"),
        "erros": payload.get("erros"),
        "payload": payload,
        "xml": xml,
    }


class ResultPersister:
    def __init__(self, session_factory: Callable = SessionLocal,
                 vocabulary: Optional[StatusVocabulary] = None):
        self._session_factory = session_factory
        self.vocabulary = vocabulary or StatusVocabulary()

    def save(self, reference: str, payload: Dict[str, Any], owner_id) -> NotaFiscalServico:
        values = map_payload(payload, self.vocabulary)
        values["empresa_id"] = owner_id
        # Second pass only when a concurrent insert won the unique key
        for attempt in (1, 2):
            try:
                return self._upsert(reference, values)
            except IntegrityError as e:
                if attempt == 2:
                    raise PersistenceError(f"Falha ao salvar NFSe {reference}: {e.orig}") from e
                logger.warning(f"Conflito ao inserir NFSe {reference}, atualizando registro existente")
            except SQLAlchemyError as e:
                raise PersistenceError(f"Falha ao salvar NFSe {reference}: {e}") from e

    def attach_xml(self, reference: str, xml: str) -> NotaFiscalServico:
        """Store the downloaded XML and fill the columns the JSON response left empty."""
        db = self._session_factory()
        try:
            nota = db.query(NotaFiscalServico).filter(NotaFiscalServico.referencia == reference).first()
            if not nota:
                raise PersistenceError(f"NFSe {reference} não encontrada")
            payload = dict(nota.payload or {}, xml=xml)
            for k, v in map_payload(payload, self.vocabulary).items():
                if v is not None and (k in ("payload", "xml") or getattr(nota, k) in (None, "", 0, 0.0)):
                    setattr(nota, k, v)
            db.commit()
            db.refresh(nota)
            return nota
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError(f"Falha ao salvar XML da NFSe {reference}: {e}") from e
        finally:
            db.close()

    def _upsert(self, reference: str, values: Dict[str, Any]) -> NotaFiscalServico:
        db = self._session_factory()
        try:
            nota = db.query(NotaFiscalServico).filter(NotaFiscalServico.referencia == reference).first()
            if nota is None:
                nota = NotaFiscalServico(referencia=reference)
                db.add(nota)
            for k, v in values.items():
                # a later answer without a field (e.g. the status query after an
                # emission) keeps what is already stored
                if v is not None or k == "erros":
                    setattr(nota, k, v)
            db.commit()
            db.refresh(nota)
            logger.info(f"NFSe {reference} salva (status={nota.status.value}, numero={nota.numero})")
            return nota
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()
