import pytest

from services.xml_service import parse_nfse_xml

NFSE_ABRASF_2 = """<?xml version="1.0" encoding="UTF-8"?>
<CompNfse xmlns="http://www.abrasf.org.br/nfse.xsd">
  <Nfse versao="2.02">
    <InfNfse Id="NFSe2024000123">
      <Numero>2024000123</Numero>
      <CodigoVerificacao>XYZ987</CodigoVerificacao>
      <DataEmissao>2024-03-15T10:30:00</DataEmissao>
      <ValoresNfse>
        <BaseCalculo>1500.00</BaseCalculo>
        <Aliquota>2.00</Aliquota>
        <ValorIss>30.00</ValorIss>
        <ValorLiquidoNfse>1470.00</ValorLiquidoNfse>
      </ValoresNfse>
      <PrestadorServico>
        <IdentificacaoPrestador>
          <CpfCnpj><Cnpj>12345678000199</Cnpj></CpfCnpj>
          <InscricaoMunicipal>445566</InscricaoMunicipal>
        </IdentificacaoPrestador>
        <RazaoSocial>Prestadora Teste LTDA</RazaoSocial>
        <Endereco>
          <Endereco>Rua das Flores</Endereco>
          <Numero>42</Numero>
          <Bairro>Centro</Bairro>
          <CodigoMunicipio>3550308</CodigoMunicipio>
          <Uf>SP</Uf>
          <Cep>01001000</Cep>
        </Endereco>
        <Contato>
          <Telefone>1133334444</Telefone>
          <Email>contato@prestadora.com</Email>
        </Contato>
      </PrestadorServico>
      <OrgaoGerador>
        <CodigoMunicipio>3550308</CodigoMunicipio>
        <Uf>SP</Uf>
      </OrgaoGerador>
      <DeclaracaoPrestacaoServico>
        <InfDeclaracaoPrestacaoServico>
          <Rps>
            <IdentificacaoRps>
              <Numero>77</Numero>
              <Serie>A1</Serie>
              <Tipo>1</Tipo>
            </IdentificacaoRps>
            <DataEmissao>2024-03-15</DataEmissao>
            <Status>1</Status>
          </Rps>
          <Competencia>2024-03-01</Competencia>
          <Servico>
            <Valores>
              <ValorServicos>1500.00</ValorServicos>
              <ValorDeducoes>0.00</ValorDeducoes>
              <ValorPis>9.75</ValorPis>
              <ValorCofins>45.00</ValorCofins>
              <ValorInss>0</ValorInss>
              <ValorIr>22.50</ValorIr>
              <ValorCsll>15.00</ValorCsll>
              <OutrasRetencoes>0</OutrasRetencoes>
              <ValorIss>31.00</ValorIss>
              <Aliquota>2.5</Aliquota>
              <DescontoIncondicionado>0</DescontoIncondicionado>
              <DescontoCondicionado>0</DescontoCondicionado>
            </Valores>
            <IssRetido>2</IssRetido>
            <ItemListaServico>17.01</ItemListaServico>
            <CodigoCnae>6920601</CodigoCnae>
            <Discriminacao>Consultoria contábil</Discriminacao>
            <CodigoMunicipio>3509502</CodigoMunicipio>
            <ExigibilidadeISS>1</ExigibilidadeISS>
          </Servico>
          <Prestador>
            <CpfCnpj><Cnpj>12345678000199</Cnpj></CpfCnpj>
          </Prestador>
          <Tomador>
            <IdentificacaoTomador>
              <CpfCnpj><Cnpj>98765432000100</Cnpj></CpfCnpj>
            </IdentificacaoTomador>
            <RazaoSocial>Cliente SA</RazaoSocial>
            <Endereco>
              <Endereco>Av. Paulista</Endereco>
              <Numero>1000</Numero>
              <Bairro>Bela Vista</Bairro>
              <CodigoMunicipio>3550308</CodigoMunicipio>
              <Uf>SP</Uf>
              <CodigoPais>1058</CodigoPais>
              <Cep>01310100</Cep>
            </Endereco>
            <Contato><Email>fin@cliente.com</Email></Contato>
          </Tomador>
          <OptanteSimplesNacional>2</OptanteSimplesNacional>
          <IncentivoFiscal>2</IncentivoFiscal>
        </InfDeclaracaoPrestacaoServico>
      </DeclaracaoPrestacaoServico>
    </InfNfse>
  </Nfse>
</CompNfse>"""


def test_parse_full_document():
    data = parse_nfse_xml(NFSE_ABRASF_2)

    assert data.inf_nfse_id == "NFSe2024000123"
    assert data.numero == "2024000123"
    assert data.codigo_verificacao == "XYZ987"
    assert data.data_emissao == "2024-03-15T10:30:00"
    assert data.base_calculo == 1500.0
    assert data.valor_liquido_nfse == 1470.0
    assert data.prestador_cnpj == "12345678000199"
    assert data.prestador_inscricao_municipal == "445566"
    assert data.prestador_razao_social == "Prestadora Teste LTDA"
    assert data.prestador_email == "contato@prestadora.com"
    assert data.orgao_uf == "SP"
    assert data.rps_serie == "A1"
    assert data.rps_status == "1"
    assert data.competencia == "2024-03-01"
    assert data.servico_valor_servicos == 1500.0
    assert data.servico_valor_cofins == 45.0
    assert data.servico_iss_retido == 2
    assert data.servico_item_lista_servico == "17.01"
    assert data.servico_discriminacao == "Consultoria contábil"
    assert data.servico_exigibilidade_iss == "1"
    assert data.tomador_cpf_cnpj == "98765432000100"
    assert data.tomador_razao_social == "Cliente SA"
    assert data.tomador_codigo_pais == "1058"
    assert data.tomador_email == "fin@cliente.com"
    assert data.optante_simples_nacional == 2
    assert data.incentivo_fiscal == 2
    assert data.lista_mensagem_retorno == []


def test_repeated_tags_do_not_bleed_between_scopes():
    data = parse_nfse_xml(NFSE_ABRASF_2)

    # Numero appears in InfNfse, IdentificacaoRps and both addresses
    assert data.numero == "2024000123"
    assert data.rps_numero == "77"
    assert data.prestador_numero == "42"
    assert data.tomador_numero == "1000"
    # Endereco nested in Endereco
    assert data.prestador_endereco == "Rua das Flores"
    assert data.tomador_endereco == "Av. Paulista"
    # ValorIss/Aliquota in ValoresNfse and in Servico/Valores
    assert data.valor_iss == 30.0
    assert data.servico_valor_iss == 31.0
    assert data.aliquota == 2.0
    assert data.servico_aliquota == 2.5
    # CodigoMunicipio in four places
    assert data.prestador_codigo_municipio == "3550308"
    assert data.servico_codigo_municipio == "3509502"


def test_abrasf_1_layout():
    xml = """<CompNfse><Nfse><InfNfse>
        <Numero>10</Numero>
        <IdentificacaoRps><Numero>3</Numero><Serie>1</Serie></IdentificacaoRps>
        <Servico><Valores><ValorServicos>200</ValorServicos><IssRetido>1</IssRetido></Valores></Servico>
        <PrestadorServico><IdentificacaoPrestador><Cnpj>11222333000144</Cnpj></IdentificacaoPrestador></PrestadorServico>
        <TomadorServico>
          <IdentificacaoTomador><CpfCnpj><Cpf>12345678909</Cpf></CpfCnpj></IdentificacaoTomador>
          <RazaoSocial>Fulano</RazaoSocial>
        </TomadorServico>
    </InfNfse></Nfse></CompNfse>"""
    data = parse_nfse_xml(xml)

    assert data.numero == "10"
    assert data.rps_numero == "3"
    assert data.servico_iss_retido == 1
    assert data.servico_valor_servicos == 200.0
    assert data.prestador_cnpj == "11222333000144"
    assert data.tomador_cpf_cnpj == "12345678909"
    assert data.tomador_razao_social == "Fulano"


def test_missing_tags_keep_defaults():
    data = parse_nfse_xml("<CompNfse><Nfse><InfNfse><Numero>1</Numero></InfNfse></Nfse></CompNfse>")

    assert data.numero == "1"
    assert data.codigo_verificacao == ""
    assert data.valor_iss == 0.0
    assert data.servico_iss_retido == 0
    assert data.tomador_email == ""


def test_bad_numbers_degrade_to_zero():
    data = parse_nfse_xml("<InfNfse><ValoresNfse><ValorIss>abc</ValorIss></ValoresNfse></InfNfse>")
    assert data.valor_iss == 0.0


def test_return_messages():
    xml = """<ConsultarNfseRpsResposta><ListaMensagemRetorno>
        <MensagemRetorno><Codigo>E160</Codigo><Mensagem>CNPJ do tomador inválido</Mensagem>
        <Correcao>Informe um CNPJ válido</Correcao></MensagemRetorno>
        <MensagemRetorno><Codigo>E10</Codigo><Mensagem>RPS já informado</Mensagem></MensagemRetorno>
    </ListaMensagemRetorno></ConsultarNfseRpsResposta>"""
    data = parse_nfse_xml(xml)

    assert data.lista_mensagem_retorno == [
        {"codigo": "E160", "mensagem": "CNPJ do tomador inválido", "correcao": "Informe um CNPJ válido"},
        {"codigo": "E10", "mensagem": "RPS já informado", "correcao": ""},
    ]


@pytest.mark.parametrize("payload", [None, "", b"", "not xml at all", "<CompNfse><Nfse>", b"\x00\x01"])
def test_malformed_input_never_raises(payload):
    data = parse_nfse_xml(payload)
    assert data.numero == ""
    assert data.valor_liquido_nfse == 0.0
