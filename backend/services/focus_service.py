"""
Focus NFe client: per-company credentials, the NFS-e status query, emission
and cancellation.

One call, one request. Retry policy belongs to the caller (see monitor_service).
"""
import httpx
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Literal, Optional
from urllib.parse import quote
from fastapi.concurrency import run_in_threadpool
from db import SessionLocal
from models.models import Ambiente, Empresa
from config import (FOCUS_NFE_URL_PRODUCAO, FOCUS_NFE_URL_HOMOLOGACAO, FOCUS_NFE_TOKEN,
                    FOCUS_TIMEOUT, CREDENTIAL_TTL_SECONDS)

logger = logging.getLogger(__name__)

NFSE_PATH = "/v2/nfse"
DEFAULT_STATUS = "processando"


class CredentialError(Exception):
    """The owner has no usable Focus NFe token."""


class FocusAPIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class ApiCredential:
    token: str
    base_url: str
    expires_at: datetime

    def expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    @property
    def auth(self) -> httpx.BasicAuth:
        # Focus NFe: token as user name, empty password
        return httpx.BasicAuth(self.token, "")


class EmpresaCredentialProvider:
    """Resolves and caches the Focus NFe credential of each company."""

    def __init__(self, session_factory: Callable = SessionLocal,
                 ttl_seconds: int = CREDENTIAL_TTL_SECONDS,
                 default_token: str = FOCUS_NFE_TOKEN,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        self._default_token = default_token
        self._clock = clock
        self._cache: Dict[Any, ApiCredential] = {}

    def get(self, owner_id) -> ApiCredential:
        now = self._clock()
        cached = self._cache.get(owner_id)
        if cached and not cached.expired(now):
            return cached

        db = self._session_factory()
        try:
            empresa = db.query(Empresa).filter(Empresa.id == owner_id).first()
            if not empresa:
                raise CredentialError(f"Empresa {owner_id} não encontrada")
            if empresa.ambiente == Ambiente.producao:
                token, base_url = empresa.token_producao, FOCUS_NFE_URL_PRODUCAO
            else:
                token, base_url = empresa.token_homologacao, FOCUS_NFE_URL_HOMOLOGACAO
        finally:
            db.close()

        token = token or self._default_token
        if not token:
            raise CredentialError(f"Empresa {owner_id} sem token Focus NFe configurado")
        credential = ApiCredential(token=token, base_url=base_url.rstrip("/"),
                                   expires_at=now + self._ttl)
        self._cache[owner_id] = credential
        return credential

    def invalidate(self, owner_id=None) -> None:
        if owner_id is None:
            self._cache.clear()
        else:
            self._cache.pop(owner_id, None)


@dataclass
class FetchResult:
    kind: Literal["not_found", "ok", "error"]
    status: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    http_status: Optional[int] = None


def _json(resp: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _provider_message(resp: httpx.Response, body: Optional[Dict[str, Any]]) -> str:
    # Focus NFe answers validation failures with {"codigo": ..., "mensagem": ...}
    if body and body.get("mensagem"):
        return f"Focus NFe recusou a requisição (HTTP {resp.status_code}): {body['mensagem']}"
    return f"Erro na API Focus NFe: HTTP {resp.status_code} {resp.text[:200]}"


class FocusNFeClient:
    def __init__(self, credentials: EmpresaCredentialProvider,
                 http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = FOCUS_TIMEOUT):
        self.credentials = credentials
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def _call(self, method: str, path: str, owner_id, **kwargs) -> httpx.Response:
        """Authenticated request against the owner's host; transport failures raise FocusAPIError."""
        # credential lookup may hit the database
        credential = await run_in_threadpool(self.credentials.get, owner_id)
        url = path if path.startswith("http") else f"{credential.base_url}/{path.lstrip('/')}"
        try:
            return await self._client.request(method, url, auth=credential.auth, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"Focus NFe timeout, {method} {path}")
            raise FocusAPIError("Timeout ao consultar Focus NFe") from e
        except httpx.HTTPError as e:
            logger.warning(f"Focus NFe connection error, {method} {path}: {e}")
            raise FocusAPIError(f"Erro de conexão com Focus NFe: {e}") from e

    def _nfse_path(self, reference: str) -> str:
        return f"{NFSE_PATH}/{quote(reference, safe='')}"

    async def fetch_status(self, reference: str, owner_id) -> FetchResult:
        """Query /v2/nfse/{reference}. 404 means the provider has not generated it yet."""
        try:
            resp = await self._call("GET", self._nfse_path(reference), owner_id,
                                    headers={"Accept": "application/json"})
        except (CredentialError, FocusAPIError) as e:
            return FetchResult(kind="error", message=str(e))

        if resp.status_code == 404:
            return FetchResult(kind="not_found", status=DEFAULT_STATUS, http_status=404)

        if not resp.is_success:
            return FetchResult(kind="error", http_status=resp.status_code,
                               message=f"Erro na API Focus NFe: HTTP {resp.status_code} {resp.text[:200]}")

        payload = _json(resp)
        if payload is None:
            return FetchResult(kind="error", http_status=resp.status_code,
                               message="Resposta inválida da API Focus NFe")

        status = str(payload.get("status") or DEFAULT_STATUS).lower()
        return FetchResult(kind="ok", status=status, payload=payload, http_status=resp.status_code)

    async def emit(self, reference: str, owner_id, dados: Dict[str, Any]) -> FetchResult:
        """POST /v2/nfse?ref=... . Focus NFe queues the RPS and answers processando_autorizacao."""
        try:
            resp = await self._call("POST", NFSE_PATH, owner_id, params={"ref": reference}, json=dados)
        except (CredentialError, FocusAPIError) as e:
            return FetchResult(kind="error", message=str(e))
        return self._command_result(resp, reference, "emissão")

    async def cancel(self, reference: str, owner_id, justificativa: str) -> FetchResult:
        """DELETE /v2/nfse/{reference} with the justification the municipality requires."""
        try:
            resp = await self._call("DELETE", self._nfse_path(reference), owner_id,
                                    json={"justificativa": justificativa})
        except (CredentialError, FocusAPIError) as e:
            return FetchResult(kind="error", message=str(e))
        return self._command_result(resp, reference, "cancelamento")

    def _command_result(self, resp: httpx.Response, reference: str, action: str) -> FetchResult:
        body = _json(resp)
        if not resp.is_success:
            logger.warning(f"Focus NFe recusou {action} da NFSe {reference}: HTTP {resp.status_code}")
            return FetchResult(kind="error", status=(body or {}).get("codigo"), payload=body or {},
                               message=_provider_message(resp, body), http_status=resp.status_code)
        if body is None:
            return FetchResult(kind="error", http_status=resp.status_code,
                               message="Resposta inválida da API Focus NFe")
        status = str(body.get("status") or DEFAULT_STATUS).lower()
        logger.info(f"Focus NFe {action} da NFSe {reference}: {status}")
        return FetchResult(kind="ok", status=status, payload=body, http_status=resp.status_code)

    async def download_xml(self, caminho: str, owner_id) -> str:
        """Fetch the authorized XML at `caminho_xml_nota_fiscal` (a path on the API host)."""
        resp = await self._call("GET", caminho, owner_id)
        if not resp.is_success:
            raise FocusAPIError(f"Erro ao baixar XML: HTTP {resp.status_code}", resp.status_code)
        return resp.text

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
