from pydantic import BaseModel, EmailStr, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from models.models import UserRole, Ambiente, NFSeStatus, CancelamentoStatus


class UserCreate(BaseModel):
    email: EmailStr
    password: str
    role: UserRole = UserRole.viewer


class UserOut(BaseModel):
    id: int
    email: str
    role: UserRole
    ativo: bool = True
    created_at: Optional[datetime] = None
    class Config:
        from_attributes = True


class UserUpdate(BaseModel):
    role: Optional[UserRole] = None
    ativo: Optional[bool] = None


class SenhaUpdate(BaseModel):
    senha_atual: str
    nova_senha: str = Field(min_length=8)


class Token(BaseModel):
    access_token: str
    token_type: str


class EmpresaCreate(BaseModel):
    cnpj: str
    razao_social: str
    inscricao_municipal: Optional[str] = None
    ambiente: Ambiente = Ambiente.homologacao
    token_producao: Optional[str] = None
    token_homologacao: Optional[str] = None


class EmpresaUpdate(BaseModel):
    razao_social: Optional[str] = None
    inscricao_municipal: Optional[str] = None
    ambiente: Optional[Ambiente] = None
    token_producao: Optional[str] = None
    token_homologacao: Optional[str] = None


class EmpresaOut(BaseModel):
    """Tokens never leave the server; only whether they are configured."""
    id: int
    cnpj: str
    razao_social: str
    inscricao_municipal: Optional[str] = None
    ambiente: Ambiente
    possui_token_producao: bool = False
    possui_token_homologacao: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, empresa) -> "EmpresaOut":
        return cls(
            id=empresa.id,
            cnpj=empresa.cnpj,
            razao_social=empresa.razao_social,
            inscricao_municipal=empresa.inscricao_municipal,
            ambiente=empresa.ambiente,
            possui_token_producao=bool(empresa.token_producao),
            possui_token_homologacao=bool(empresa.token_homologacao),
            created_at=empresa.created_at,
        )


class NotaFiscalServicoOut(BaseModel):
    id: int
    referencia: str
    empresa_id: Optional[int] = None
    status: NFSeStatus
    status_provedor: Optional[str] = None
    numero: Optional[str] = None
    codigo_verificacao: Optional[str] = None
    data_emissao: Optional[datetime] = None
    prestador_cnpj: Optional[str] = None
    prestador_razao_social: Optional[str] = None
    tomador_cpf_cnpj: Optional[str] = None
    tomador_razao_social: Optional[str] = None
    discriminacao: Optional[str] = None
    codigo_servico: Optional[str] = None
    aliquota_iss: Optional[float] = None
    valor_servicos: Optional[float] = None
    valor_liquido: Optional[float] = None
    valor_iss: Optional[float] = None
    url: Optional[str] = None
    url_danfse: Optional[str] = None
    caminho_xml_nota_fiscal: Optional[str] = None
    erros: Optional[List[Dict[str, Any]]] = None
    updated_at: Optional[datetime] = None
    class Config:
        from_attributes = True


class MonitoramentoStart(BaseModel):
    referencia: str = Field(min_length=1)
    empresa_id: int
    max_attempts: Optional[int] = Field(default=None, ge=1)
    interval_s: Optional[float] = Field(default=None, gt=0)


class MonitoringStatus(BaseModel):
    status: Literal["idle", "monitoring", "completed", "error", "cancelled"] = "idle"
    referencia: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 0
    time_elapsed: int = 0
    current_status: Optional[str] = None
    message: Optional[str] = None
    # final provider status mapped onto NFSeStatus (autorizado, erro, ...)
    result_status: Optional[str] = None
    result_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    # "timeout" when the provider never answered with a final status,
    # "persistence" when it did but the record could not be saved
    error_kind: Optional[Literal["timeout", "persistence"]] = None


class NFSeXmlData(BaseModel):
    # InfNfse
    inf_nfse_id: str = ""
    numero: str = ""
    codigo_verificacao: str = ""
    data_emissao: str = ""
    # ValoresNfse
    base_calculo: float = 0.0
    aliquota: float = 0.0
    valor_iss: float = 0.0
    valor_liquido_nfse: float = 0.0
    # PrestadorServico
    prestador_cnpj: str = ""
    prestador_inscricao_municipal: str = ""
    prestador_razao_social: str = ""
    prestador_endereco: str = ""
    prestador_numero: str = ""
    prestador_bairro: str = ""
    prestador_codigo_municipio: str = ""
    prestador_uf: str = ""
    prestador_cep: str = ""
    prestador_telefone: str = ""
    prestador_email: str = ""
    # OrgaoGerador
    orgao_codigo_municipio: str = ""
    orgao_uf: str = ""
    # Rps
    rps_numero: str = ""
    rps_serie: str = ""
    rps_tipo: str = ""
    rps_status: str = ""
    competencia: str = ""
    # Servico > Valores
    servico_valor_servicos: float = 0.0
    servico_valor_deducoes: float = 0.0
    servico_valor_pis: float = 0.0
    servico_valor_cofins: float = 0.0
    servico_valor_inss: float = 0.0
    servico_valor_ir: float = 0.0
    servico_valor_csll: float = 0.0
    servico_outras_retencoes: float = 0.0
    servico_valor_iss: float = 0.0
    servico_aliquota: float = 0.0
    servico_desconto_incondicionado: float = 0.0
    servico_desconto_condicionado: float = 0.0
    # Servico
    servico_iss_retido: int = 0  # 1=Sim, 2=Não
    servico_item_lista_servico: str = ""
    servico_codigo_cnae: str = ""
    servico_discriminacao: str = ""
    servico_codigo_municipio: str = ""
    servico_exigibilidade_iss: str = ""
    # Tomador
    tomador_cpf_cnpj: str = ""
    tomador_razao_social: str = ""
    tomador_endereco: str = ""
    tomador_numero: str = ""
    tomador_bairro: str = ""
    tomador_codigo_municipio: str = ""
    tomador_uf: str = ""
    tomador_codigo_pais: str = ""
    tomador_cep: str = ""
    tomador_email: str = ""
    # InfDeclaracaoPrestacaoServico
    optante_simples_nacional: int = 0  # 1=Sim, 2=Não
    incentivo_fiscal: int = 0  # 1=Sim, 2=Não
    lista_mensagem_retorno: List[Dict[str, str]] = []


class MonthlyTotal(BaseModel):
    mes: str
    total: float


class DashboardStats(BaseModel):
    total_mes: float
    total_autorizado: float
    total_documentos: int
    por_status: Dict[str, int]
    por_mes: List[MonthlyTotal]


class EmissaoNFSe(BaseModel):
    """Focus NFe emission body (prestador, tomador, servico...) passed through as-is."""
    empresa_id: int
    referencia: Optional[str] = Field(default=None, min_length=1, max_length=50)
    dados: Dict[str, Any]
    max_attempts: Optional[int] = Field(default=None, ge=1)
    interval_s: Optional[float] = Field(default=None, gt=0)


class EmissaoResultado(BaseModel):
    referencia: str
    status_provedor: str
    # set when the provider answered with a non-final status and polling started
    monitoramento: Optional[MonitoringStatus] = None


class CancelamentoRequest(BaseModel):
    motivo: str = Field(min_length=1, max_length=255)
    justificativa: str = Field(min_length=15, max_length=255)


class CancelamentoOut(BaseModel):
    id: int
    referencia: str
    numero_nfse: Optional[str] = None
    empresa_id: Optional[int] = None
    motivo: str
    justificativa: str
    status: CancelamentoStatus
    status_provedor: Optional[str] = None
    mensagem_erro: Optional[str] = None
    data_cancelamento: Optional[datetime] = None
    class Config:
        from_attributes = True
