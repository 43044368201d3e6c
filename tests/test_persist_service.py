import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from db import SessionLocal
from models.models import NotaFiscalServico, NFSeStatus
from services.nfse_status import StatusVocabulary
from services.persist_service import ResultPersister, PersistenceError, map_payload

FOCUS_AUTORIZADA = {
    "cnpj_prestador": "12345678000199",
    "ref": "REF-1",
    "status": "autorizado",
    "numero": "2024000123",
    "codigo_verificacao": "XYZ987",
    "data_emissao": "2024-03-15T10:30:00-03:00",
    "url": "https://nfse.prefeitura.gov.br/nota/123",
    "url_danfse": "https://api.focusnfe.com.br/notas_fiscais_servico/123.pdf",
    "caminho_xml_nota_fiscal": "/arquivos/123/nfse.xml",
    "prestador": {"cnpj": "12345678000199", "razao_social": "Prestadora Teste LTDA"},
    "tomador": {"cnpj": "98765432000100", "razao_social": "Cliente SA", "email": "fin@cliente.com"},
    "servico": {
        "discriminacao": "Consultoria contábil",
        "item_lista_servico": "1701",
        "aliquota": "2,00",
        "valor_servicos": "1500.00",
        "valor_iss": 30.0,
    },
}


def _rows(reference):
    db = SessionLocal()
    try:
        return db.query(NotaFiscalServico).filter(NotaFiscalServico.referencia == reference).all()
    finally:
        db.close()


def test_save_maps_focus_payload(empresa):
    nota = ResultPersister().save("REF-1", FOCUS_AUTORIZADA, empresa.id)

    assert nota.status == NFSeStatus.autorizado
    assert nota.numero == "2024000123"
    assert nota.codigo_verificacao == "XYZ987"
    assert nota.prestador_cnpj == "12345678000199"
    assert nota.prestador_razao_social == "Prestadora Teste LTDA"
    assert nota.tomador_cpf_cnpj == "98765432000100"
    assert nota.discriminacao == "Consultoria contábil"
    assert nota.codigo_servico == "1701"
    assert nota.aliquota_iss == 2.0
    assert nota.valor_servicos == 1500.0
    # no net value in the response: falls back to the gross value
    assert nota.valor_liquido == 1500.0
    assert nota.valor_iss == 30.0
    assert nota.data_emissao.year == 2024
    assert nota.payload["ref"] == "REF-1"
    assert nota.empresa_id == empresa.id


def test_save_twice_updates_single_row(empresa):
    persister = ResultPersister()
    persister.save("REF-1", FOCUS_AUTORIZADA, empresa.id)
    persister.save("REF-1", FOCUS_AUTORIZADA, empresa.id)
    assert len(_rows("REF-1")) == 1

    cancelada = dict(FOCUS_AUTORIZADA, status="cancelado")
    persister.save("REF-1", cancelada, empresa.id)

    rows = _rows("REF-1")
    assert len(rows) == 1
    assert rows[0].status == NFSeStatus.cancelado


def test_rejection_keeps_error_list(empresa):
    erros = [{"codigo": "E1", "mensagem": "CNPJ inválido"}]
    nota = ResultPersister().save("X3", {"status": "erro_autorizacao", "erros": erros}, empresa.id)

    assert nota.status == NFSeStatus.erro
    assert nota.status_provedor == "erro_autorizacao"
    assert nota.erros == erros
    assert nota.numero is None


def test_embedded_xml_fills_missing_fields(empresa):
    xml = """<CompNfse><Nfse><InfNfse Id="n1">
        <Numero>555</Numero><CodigoVerificacao>QWE</CodigoVerificacao>
        <ValoresNfse><ValorLiquidoNfse>950.00</ValorLiquidoNfse></ValoresNfse>
        <PrestadorServico><RazaoSocial>Via XML LTDA</RazaoSocial></PrestadorServico>
        </InfNfse></Nfse></CompNfse>"""
    nota = ResultPersister().save("REF-XML", {"status": "autorizado", "xml": xml}, empresa.id)

    assert nota.numero == "555"
    assert nota.codigo_verificacao == "QWE"
    assert nota.prestador_razao_social == "Via XML LTDA"
    assert nota.valor_liquido == 950.0
    assert nota.xml == xml


def test_attach_xml_only_fills_gaps(empresa):
    persister = ResultPersister()
    persister.save("REF-1", FOCUS_AUTORIZADA, empresa.id)
    xml = """<CompNfse><Nfse><InfNfse>
        <Numero>999</Numero>
        <TomadorServico><Contato><Email>outro@cliente.com</Email></Contato></TomadorServico>
        <ValoresNfse><ValorLiquidoNfse>1470.00</ValorLiquidoNfse></ValoresNfse>
        </InfNfse></Nfse></CompNfse>"""

    nota = persister.attach_xml("REF-1", xml)

    assert nota.numero == "2024000123"
    assert nota.tomador_email == "fin@cliente.com"
    assert nota.xml == xml
    with pytest.raises(PersistenceError):
        persister.attach_xml("NAO-EXISTE", xml)


def test_database_failure_raises_persistence_error(tmp_path):
    broken = create_engine(f"sqlite:///{tmp_path}/missing/dir/nfse.db")
    persister = ResultPersister(sessionmaker(bind=broken))

    with pytest.raises(PersistenceError):
        persister.save("REF-1", FOCUS_AUTORIZADA, 1)


def test_status_vocabulary_is_configurable():
    vocabulary = StatusVocabulary(terminal={"emitida"}, aliases={"emitida": "autorizado"})

    assert vocabulary.is_terminal("EMITIDA")
    assert not vocabulary.is_terminal("autorizado")
    assert vocabulary.classify("emitida") == NFSeStatus.autorizado
    assert map_payload({"status": "emitida"}, vocabulary)["status"] == NFSeStatus.autorizado


def test_default_vocabulary():
    vocabulary = StatusVocabulary()

    for status in ("autorizado", "cancelado", "erro", "erro_autorizacao", "rejeitado", "denegado"):
        assert vocabulary.is_terminal(status)
    assert not vocabulary.is_terminal("processando_autorizacao")
    assert not vocabulary.is_terminal(None)
    assert vocabulary.classify("processando_autorizacao") == NFSeStatus.processando
    assert vocabulary.classify("Denegado") == NFSeStatus.denegado
    assert vocabulary.classify("erro_desconhecido") == NFSeStatus.erro
    assert vocabulary.classify("algo_novo") == NFSeStatus.processando


def test_status_answer_keeps_fields_from_emission(empresa):
    persister = ResultPersister()
    emitida = {
        "status": "processando_autorizacao",
        "tomador": {"cnpj": "98765432000100", "razao_social": "Cliente SA"},
        "servico": {"discriminacao": "Consultoria", "valor_servicos": 800},
    }
    persister.save("REF-EMIT", emitida, empresa.id)

    nota = persister.save("REF-EMIT", {"status": "autorizado", "numero": "321"}, empresa.id)

    assert nota.status == NFSeStatus.autorizado
    assert nota.numero == "321"
    assert nota.tomador_razao_social == "Cliente SA"
    assert nota.discriminacao == "Consultoria"
    assert nota.valor_servicos == 800.0
    assert len(_rows("REF-EMIT")) == 1
