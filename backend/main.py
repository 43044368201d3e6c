import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from db import engine, Base, SessionLocal
from models import models  # noqa: F401  (registers all ORM models)
from routers import auth, empresas, monitoramento, notas, dashboard
from routers.auth import get_password_hash
from models.models import User, UserRole
from services.focus_service import EmpresaCredentialProvider, FocusNFeClient
from services.monitor_service import MonitorRegistry, PollingMonitor
from services.nfse_status import StatusVocabulary
from services.notifications import LoggingNotificationSink
from services.persist_service import ResultPersister

logging.basicConfig(level=logging.INFO,
                    format="%(asctime)s  %(levelname)s  %(name)s — %(message)s")
logger = logging.getLogger(__name__)


def seed_admin():
    """Create default admin if no users exist."""
    db = SessionLocal()
    try:
        if db.query(User).count() == 0:
            db.add(User(
                email="admin@empresa.com",
                hashed_password=get_password_hash("admin123"),
                role=UserRole.admin,
            ))
            db.commit()
            logger.info("Admin criado: admin@empresa.com / admin123")
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    seed_admin()

    vocabulary = StatusVocabulary()
    credentials = EmpresaCredentialProvider(SessionLocal)
    focus = FocusNFeClient(credentials)
    persister = ResultPersister(SessionLocal, vocabulary)
    sink = LoggingNotificationSink()

    app.state.credentials = credentials
    app.state.focus = focus
    app.state.persister = persister
    app.state.monitors = MonitorRegistry(
        lambda: PollingMonitor(focus, persister, sink=sink, vocabulary=vocabulary))
    yield
    await app.state.monitors.shutdown()
    await focus.aclose()


app = FastAPI(
    title="Monitor de NFS-e",
    description="API para acompanhamento da autorização de NFS-e na Focus NFe",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# All API routes live under /api
app.include_router(auth.router, prefix="/api")
app.include_router(empresas.router, prefix="/api")
app.include_router(monitoramento.router, prefix="/api")
app.include_router(notas.router, prefix="/api")
app.include_router(dashboard.router, prefix="/api")


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok", "monitoramentos_ativos": len(app.state.monitors.active())}
