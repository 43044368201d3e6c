"""
NFS-e XML field extractor (ABRASF layout, versions 1.0 and 2.x).

Every field is looked up through an explicit path scoped by its parent
element, so tags that repeat at different levels (Numero, Endereco,
CodigoMunicipio, ValorIss...) never bleed into each other. Namespaces are
ignored. The extractor never raises: absent tags keep the model defaults and
unparseable input returns an all-default record.
"""
import logging
import xml.etree.ElementTree as ET
from typing import Callable, Dict, List, Tuple, Union
from schemas.schemas import NFSeXmlData

logger = logging.getLogger(__name__)

_PRESTADOR = ("PrestadorServico", "InfDeclaracaoPrestacaoServico/Prestador")
_TOMADOR = ("InfDeclaracaoPrestacaoServico/Tomador", "InfDeclaracaoPrestacaoServico/TomadorServico",
            "InfNfse/TomadorServico", "InfNfse/Tomador")
_ENDERECO_PRESTADOR = "PrestadorServico/Endereco"
_SERVICO_VALORES = "Servico/Valores"


def _xpath(path: str) -> str:
    """'A/B//C' -> './/{*}A/{*}B//{*}C' (namespace agnostic, anchored anywhere)."""
    return ".//" + "/".join(f"{{*}}{part}" if part else "" for part in path.split("/"))


def _scoped(scopes: Tuple[str, ...], tail: str) -> Tuple[str, ...]:
    return tuple(f"{scope}/{tail}" for scope in scopes)


def _float(val: str) -> float:
    try:
        return float(val) if val else 0.0
    except (ValueError, TypeError):
        return 0.0


def _int(val: str) -> int:
    try:
        return int(float(val)) if val else 0
    except (ValueError, TypeError):
        return 0


_Field = Tuple[str, Tuple[str, ...], Callable[[str], Union[str, float, int]]]

# field name -> candidate paths (first hit wins) -> converter
FIELD_MAP: List[_Field] = [
    ("numero", ("InfNfse/Numero",), str),
    ("codigo_verificacao", ("InfNfse/CodigoVerificacao",), str),
    ("data_emissao", ("InfNfse/DataEmissao",), str),

    ("base_calculo", ("InfNfse/ValoresNfse/BaseCalculo", f"{_SERVICO_VALORES}/BaseCalculo"), _float),
    ("aliquota", ("InfNfse/ValoresNfse/Aliquota",), _float),
    ("valor_iss", ("InfNfse/ValoresNfse/ValorIss",), _float),
    ("valor_liquido_nfse", ("InfNfse/ValoresNfse/ValorLiquidoNfse",
                            f"{_SERVICO_VALORES}/ValorLiquidoNfse"), _float),

    ("prestador_cnpj", _scoped(_PRESTADOR, "IdentificacaoPrestador//Cnpj")
     + _scoped(_PRESTADOR, "CpfCnpj/Cnpj") + _scoped(_PRESTADOR, "Cnpj"), str),
    ("prestador_inscricao_municipal", _scoped(_PRESTADOR, "IdentificacaoPrestador/InscricaoMunicipal")
     + _scoped(_PRESTADOR, "InscricaoMunicipal"), str),
    ("prestador_razao_social", ("PrestadorServico/RazaoSocial",), str),
    ("prestador_endereco", (f"{_ENDERECO_PRESTADOR}/Endereco",), str),
    ("prestador_numero", (f"{_ENDERECO_PRESTADOR}/Numero",), str),
    ("prestador_bairro", (f"{_ENDERECO_PRESTADOR}/Bairro",), str),
    ("prestador_codigo_municipio", (f"{_ENDERECO_PRESTADOR}/CodigoMunicipio",), str),
    ("prestador_uf", (f"{_ENDERECO_PRESTADOR}/Uf",), str),
    ("prestador_cep", (f"{_ENDERECO_PRESTADOR}/Cep",), str),
    ("prestador_telefone", ("PrestadorServico/Contato/Telefone",), str),
    ("prestador_email", ("PrestadorServico/Contato/Email",), str),

    ("orgao_codigo_municipio", ("OrgaoGerador/CodigoMunicipio",), str),
    ("orgao_uf", ("OrgaoGerador/Uf",), str),

    ("rps_numero", ("IdentificacaoRps/Numero",), str),
    ("rps_serie", ("IdentificacaoRps/Serie",), str),
    ("rps_tipo", ("IdentificacaoRps/Tipo",), str),
    ("rps_status", ("Rps/Status",), str),
    ("competencia", ("InfDeclaracaoPrestacaoServico/Competencia", "InfNfse/Competencia"), str),

    ("servico_valor_servicos", (f"{_SERVICO_VALORES}/ValorServicos",), _float),
    ("servico_valor_deducoes", (f"{_SERVICO_VALORES}/ValorDeducoes",), _float),
    ("servico_valor_pis", (f"{_SERVICO_VALORES}/ValorPis",), _float),
    ("servico_valor_cofins", (f"{_SERVICO_VALORES}/ValorCofins",), _float),
    ("servico_valor_inss", (f"{_SERVICO_VALORES}/ValorInss",), _float),
    ("servico_valor_ir", (f"{_SERVICO_VALORES}/ValorIr",), _float),
    ("servico_valor_csll", (f"{_SERVICO_VALORES}/ValorCsll",), _float),
    ("servico_outras_retencoes", (f"{_SERVICO_VALORES}/OutrasRetencoes",), _float),
    ("servico_valor_iss", (f"{_SERVICO_VALORES}/ValorIss",), _float),
    ("servico_aliquota", (f"{_SERVICO_VALORES}/Aliquota",), _float),
    ("servico_desconto_incondicionado", (f"{_SERVICO_VALORES}/DescontoIncondicionado",), _float),
    ("servico_desconto_condicionado", (f"{_SERVICO_VALORES}/DescontoCondicionado",), _float),

    # IssRetido moved out of Valores in ABRASF 2.x
    ("servico_iss_retido", ("Servico/IssRetido", f"{_SERVICO_VALORES}/IssRetido"), _int),
    ("servico_item_lista_servico", ("Servico/ItemListaServico",), str),
    ("servico_codigo_cnae", ("Servico/CodigoCnae",), str),
    ("servico_discriminacao", ("Servico/Discriminacao",), str),
    ("servico_codigo_municipio", ("Servico/CodigoMunicipio",), str),
    ("servico_exigibilidade_iss", ("Servico/ExigibilidadeISS",), str),

    ("tomador_cpf_cnpj", _scoped(_TOMADOR, "IdentificacaoTomador//Cnpj")
     + _scoped(_TOMADOR, "IdentificacaoTomador//Cpf"), str),
    ("tomador_razao_social", _scoped(_TOMADOR, "RazaoSocial"), str),
    ("tomador_endereco", _scoped(_TOMADOR, "Endereco/Endereco"), str),
    ("tomador_numero", _scoped(_TOMADOR, "Endereco/Numero"), str),
    ("tomador_bairro", _scoped(_TOMADOR, "Endereco/Bairro"), str),
    ("tomador_codigo_municipio", _scoped(_TOMADOR, "Endereco/CodigoMunicipio"), str),
    ("tomador_uf", _scoped(_TOMADOR, "Endereco/Uf"), str),
    ("tomador_codigo_pais", _scoped(_TOMADOR, "Endereco/CodigoPais"), str),
    ("tomador_cep", _scoped(_TOMADOR, "Endereco/Cep"), str),
    ("tomador_email", _scoped(_TOMADOR, "Contato/Email"), str),

    ("optante_simples_nacional", ("OptanteSimplesNacional",), _int),
    ("incentivo_fiscal", ("IncentivoFiscal", "IncentivadorCultural"), _int),
]


def _text(root: ET.Element, paths: Tuple[str, ...]) -> str:
    for path in paths:
        el = root.find(_xpath(path))
        if el is not None and el.text and el.text.strip():
            return el.text.strip()
    return ""


def _mensagens(root: ET.Element) -> List[Dict[str, str]]:
    mensagens = []
    for msg in root.iterfind(_xpath("ListaMensagemRetorno/MensagemRetorno")):
        mensagens.append({
            "codigo": _text(msg, ("Codigo",)),
            "mensagem": _text(msg, ("Mensagem",)),
            "correcao": _text(msg, ("Correcao",)),
        })
    return mensagens


def parse_nfse_xml(xml: Union[str, bytes, None]) -> NFSeXmlData:
    if not xml:
        return NFSeXmlData()
    try:
        parsed = ET.fromstring(xml)
    except (ET.ParseError, ValueError) as e:
        logger.warning(f"XML da NFSe inválido, retornando valores padrão: {e}")
        return NFSeXmlData()

    # Paths are searched below the document element, so give it a parent
    root = ET.Element("documento")
    root.append(parsed)

    data: Dict = {}
    inf = root.find(_xpath("InfNfse"))
    if inf is not None:
        data["inf_nfse_id"] = inf.get("Id", "") or inf.get("id", "")

    for field, paths, convert in FIELD_MAP:
        val = _text(root, paths)
        if val:
            data[field] = convert(val)
    data["lista_mensagem_retorno"] = _mensagens(root)
    return NFSeXmlData(**data)
