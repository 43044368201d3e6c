import os
from dotenv import load_dotenv

load_dotenv()
_RAW_DB_URL = os.getenv("DATABASE_URL", "sqlite:///./nfse_monitor.db")
# Render usa "postgres://", SQLAlchemy precisa de "postgresql://"
DATABASE_URL = _RAW_DB_URL.replace("postgres://", "postgresql://", 1)
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 480))

FOCUS_NFE_URL_PRODUCAO = os.getenv("FOCUS_NFE_URL_PRODUCAO", "https://api.focusnfe.com.br")
FOCUS_NFE_URL_HOMOLOGACAO = os.getenv("FOCUS_NFE_URL_HOMOLOGACAO",
                                      "https://homologacao.focusnfe.com.br")
FOCUS_NFE_TOKEN = os.getenv("FOCUS_NFE_TOKEN", "")
FOCUS_TIMEOUT = float(os.getenv("FOCUS_TIMEOUT", 15))  # seconds
CREDENTIAL_TTL_SECONDS = int(os.getenv("CREDENTIAL_TTL_SECONDS", 600))

MONITOR_MAX_ATTEMPTS = int(os.getenv("MONITOR_MAX_ATTEMPTS", 40))
MONITOR_INTERVAL_SECONDS = float(os.getenv("MONITOR_INTERVAL_SECONDS", 15))
# Finished sessions stay queryable for this long before the registry forgets them
MONITOR_RETENTION_SECONDS = float(os.getenv("MONITOR_RETENTION_SECONDS", 3600))

# Provider vocabulary. Focus NFe does not document it, so it stays overridable.
NFSE_TERMINAL_STATUSES = frozenset(
    s.strip().lower() for s in os.getenv(
        "NFSE_TERMINAL_STATUSES",
        "autorizado,cancelado,erro,erro_autorizacao,rejeitado,denegado",
    ).split(",") if s.strip()
)
NFSE_STATUS_ALIASES = dict(
    pair.strip().lower().split("=", 1) for pair in os.getenv(
        "NFSE_STATUS_ALIASES",
        "processando_autorizacao=processando,erro_autorizacao=erro,"
        "autorizada=autorizado,cancelada=cancelado",
    ).split(",") if "=" in pair
)
