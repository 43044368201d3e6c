import asyncio
import os
import sys
from pathlib import Path

# backend/ holds flat top-level modules (config, db, main...), as when run with uvicorn
BACKEND_DIR = Path(__file__).resolve().parents[1] / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Must be set before config/db are imported: one shared in-memory database
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("FOCUS_NFE_TOKEN", "")

import pytest  # noqa: E402

from db import Base, engine, SessionLocal  # noqa: E402
from models.models import Ambiente, Empresa  # noqa: E402
from services.focus_service import FetchResult  # noqa: E402


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def empresa(db):
    empresa = Empresa(cnpj="12345678000199", razao_social="Prestadora Teste LTDA",
                      ambiente=Ambiente.homologacao, token_homologacao="token-homolog",
                      token_producao="token-prod")
    db.add(empresa)
    db.commit()
    db.refresh(empresa)
    return empresa


def ok(status, **fields):
    return FetchResult(kind="ok", status=status.lower(), payload={"status": status, **fields},
                       http_status=200)


def not_found():
    return FetchResult(kind="not_found", status="processando", http_status=404)


def api_error(message="Erro na API Focus NFe: HTTP 500"):
    return FetchResult(kind="error", message=message, http_status=500)


class ScriptedFetcher:
    """Answers fetch_status from a script; the last answer repeats forever."""

    def __init__(self, results, clock=None, latency=0.0):
        self.results = list(results)
        self.calls = []
        self.clock = clock
        self.latency = latency

    async def fetch_status(self, reference, owner_id):
        self.calls.append((reference, owner_id))
        if self.clock is not None:
            self.clock.now += self.latency
        result = self.results[min(len(self.calls), len(self.results)) - 1]
        if isinstance(result, Exception):
            raise result
        return result


class FakeClock:
    def __init__(self):
        self.now = 1000.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class SpySink:
    def __init__(self):
        self.events = []

    def on_status_change(self, status):
        self.events.append(("change", status))

    def on_complete(self, status):
        self.events.append(("complete", status))

    def on_error(self, status):
        self.events.append(("error", status))

    def kinds(self):
        return [kind for kind, _ in self.events]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return SpySink()
