from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Enum, JSON, Text, Boolean
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum
from db import Base


class UserRole(str, enum.Enum):
    admin = "admin"
    viewer = "viewer"


class Ambiente(str, enum.Enum):
    homologacao = "homologacao"
    producao = "producao"


class NFSeStatus(str, enum.Enum):
    processando = "processando"
    autorizado = "autorizado"
    erro = "erro"
    cancelado = "cancelado"
    rejeitado = "rejeitado"
    denegado = "denegado"


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String, unique=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(Enum(UserRole), default=UserRole.viewer)
    # deactivated users keep their companies but can no longer log in
    ativo = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    empresas = relationship("Empresa", back_populates="user")


class Empresa(Base):
    """Issuing company; owns the Focus NFe credentials used to query its notes."""
    __tablename__ = "empresas"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"))
    cnpj = Column(String, unique=True, nullable=False)
    razao_social = Column(String, nullable=False)
    inscricao_municipal = Column(String)
    ambiente = Column(Enum(Ambiente), default=Ambiente.homologacao, nullable=False)
    token_producao = Column(String)
    token_homologacao = Column(String)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    user = relationship("User", back_populates="empresas")
    notas = relationship("NotaFiscalServico", back_populates="empresa")


class NotaFiscalServico(Base):
    __tablename__ = "notas_fiscais_servico"
    id = Column(Integer, primary_key=True)
    referencia = Column(String, unique=True, nullable=False, index=True)
    empresa_id = Column(Integer, ForeignKey("empresas.id"))
    status = Column(Enum(NFSeStatus), default=NFSeStatus.processando, nullable=False)
    status_provedor = Column(String)
    numero = Column(String)
    codigo_verificacao = Column(String)
    data_emissao = Column(DateTime(timezone=True))
    prestador_cnpj = Column(String)
    prestador_razao_social = Column(String)
    tomador_cpf_cnpj = Column(String)
    tomador_razao_social = Column(String)
    tomador_email = Column(String)
    discriminacao = Column(Text)
    codigo_servico = Column(String)
    aliquota_iss = Column(Float, default=0)
    valor_servicos = Column(Float, default=0)
    valor_liquido = Column(Float, default=0)
    valor_iss = Column(Float, default=0)
    valor_deducoes = Column(Float, default=0)
    valor_pis = Column(Float, default=0)
    valor_cofins = Column(Float, default=0)
    valor_inss = Column(Float, default=0)
    valor_ir = Column(Float, default=0)
    valor_csll = Column(Float, default=0)
    url = Column(String)
    url_danfse = Column(String)
    caminho_xml_nota_fiscal = Column(String)
    erros = Column(JSON)
    # Raw provider response and XML, kept for audit
    payload = Column(JSON)
    xml = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    empresa = relationship("Empresa", back_populates="notas")


class CancelamentoStatus(str, enum.Enum):
    cancelado = "cancelado"
    processando = "processando"
    erro = "erro"


class HistoricoCancelamento(Base):
    """One row per cancellation request sent to the provider, successful or not."""
    __tablename__ = "historico_cancelamentos"
    id = Column(Integer, primary_key=True)
    referencia = Column(String, nullable=False, index=True)
    numero_nfse = Column(String)
    empresa_id = Column(Integer, ForeignKey("empresas.id"), index=True)
    usuario_id = Column(Integer, ForeignKey("users.id"))
    motivo = Column(String, nullable=False)
    justificativa = Column(Text, nullable=False)
    status = Column(Enum(CancelamentoStatus), default=CancelamentoStatus.processando, nullable=False)
    status_provedor = Column(String)
    mensagem_erro = Column(Text)
    data_cancelamento = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    usuario = relationship("User")
