"""
NFS-e status monitor.

Focus NFe authorizes service invoices asynchronously: after emission the
reference has to be polled until the provider reports a final status. A
PollingMonitor owns one such session:

    idle -> monitoring -> completed | error | cancelled

The first query runs right away, the next ones every `interval_s`. Ticks run
one after the other inside a single task, so a slow response delays the next
tick instead of overlapping it. A final status always wins over the attempt
limit on the same tick. Every failure ends in a reported session state; no
exception leaves the monitoring task.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional
from fastapi.concurrency import run_in_threadpool
from config import MONITOR_MAX_ATTEMPTS, MONITOR_INTERVAL_SECONDS, MONITOR_RETENTION_SECONDS
from schemas.schemas import MonitoringStatus
from services.focus_service import FocusNFeClient, DEFAULT_STATUS
from services.nfse_status import StatusVocabulary
from services.notifications import NotificationSink, LoggingNotificationSink
from services.persist_service import ResultPersister, PersistenceError

logger = logging.getLogger(__name__)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class PollingMonitor:
    def __init__(self, fetcher: FocusNFeClient, persister: ResultPersister,
                 sink: Optional[NotificationSink] = None,
                 vocabulary: Optional[StatusVocabulary] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self._fetcher = fetcher
        self._persister = persister
        self._sink = sink or LoggingNotificationSink()
        self._vocabulary = vocabulary or persister.vocabulary
        self._sleep = sleep
        self._clock = clock

        self._status = MonitoringStatus()
        self._task: Optional[asyncio.Task] = None
        self._done: Optional[asyncio.Event] = None
        self._reference: Optional[str] = None
        self._owner_id = None
        self._interval = MONITOR_INTERVAL_SECONDS
        self._started_at = 0.0
        self._finished_at: Optional[float] = None
        self._last_error: Optional[str] = None

    @property
    def owner_id(self):
        return self._owner_id

    @property
    def is_running(self) -> bool:
        return self._status.status == "monitoring"

    def idle_for(self) -> Optional[float]:
        """Seconds since the session reached a final state; None while idle or running."""
        if self._finished_at is None or self.is_running:
            return None
        return self._clock() - self._finished_at

    def snapshot(self) -> MonitoringStatus:
        return self._status.model_copy(deep=True)

    async def start(self, reference: str, owner_id,
                    max_attempts: int = MONITOR_MAX_ATTEMPTS,
                    interval_s: float = MONITOR_INTERVAL_SECONDS) -> MonitoringStatus:
        """Start a fresh session and return once the first query has been answered."""
        if self.is_running:
            logger.warning(f"Monitoramento de {self._reference} já em andamento; ignorando start({reference})")
            return self.snapshot()

        self._reference, self._owner_id = reference, owner_id
        self._interval = interval_s
        self._started_at = self._clock()
        self._finished_at = None
        self._last_error = None
        # Each task only ever releases the events of the session it was started for
        done, first_tick = asyncio.Event(), asyncio.Event()
        self._done = done
        self._status = MonitoringStatus(
            status="monitoring", referencia=reference, attempts=0,
            max_attempts=max_attempts, time_elapsed=0,
            message="Iniciando monitoramento...",
        )
        logger.info(f"Iniciando monitoramento da NFSe {reference} "
                    f"({max_attempts} tentativas a cada {interval_s}s)")
        self._task = asyncio.create_task(self._run(done, first_tick), name=f"nfse-monitor-{reference}")
        await first_tick.wait()
        return self.snapshot()

    def stop(self) -> MonitoringStatus:
        """Cancel the session. Safe to call repeatedly or when nothing is running."""
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        if self.is_running:
            self._update(status="cancelled", time_elapsed=self._elapsed(),
                         message="Monitoramento interrompido")
            logger.info(f"Monitoramento da NFSe {self._reference} interrompido")
            self._finished_at = self._clock()
            self._release()
            self._notify(self._sink.on_status_change)
        return self.snapshot()

    async def wait(self) -> MonitoringStatus:
        if self._done is not None:
            await self._done.wait()
        return self.snapshot()

    def _owns(self, done: asyncio.Event) -> bool:
        return self._done is done and self.is_running

    async def _run(self, done: asyncio.Event, first_tick: asyncio.Event) -> None:
        try:
            while self._owns(done):
                tick_started = self._clock()
                await self._tick()
                first_tick.set()
                if not self._owns(done):
                    break
                await self._sleep(max(0.0, self._interval - (self._clock() - tick_started)))
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.exception(f"Erro inesperado no monitoramento da NFSe {self._reference}")
            if self._owns(done):
                self._finish("error", error_message=f"Erro inesperado no monitoramento: {e}")
        finally:
            first_tick.set()
            done.set()

    async def _tick(self) -> None:
        attempts = self._status.attempts + 1
        max_attempts = self._status.max_attempts
        self._update(attempts=attempts, time_elapsed=self._elapsed(),
                     message=f"Consultando status... (tentativa {attempts}/{max_attempts})")

        result = await self._fetcher.fetch_status(self._reference, self._owner_id)
        if not self.is_running:
            # stopped while the request was in flight
            return
        self._update(time_elapsed=self._elapsed())

        if result.kind == "error":
            self._last_error = result.message
            if attempts < max_attempts:
                logger.warning(f"Erro temporário ao consultar NFSe {self._reference} "
                               f"({attempts}/{max_attempts}): {result.message}")
                self._update(message=f"Erro temporário, tentando novamente... ({attempts}/{max_attempts})")
                self._notify(self._sink.on_status_change)
                return
            self._timeout()
            return

        status = DEFAULT_STATUS if result.kind == "not_found" else result.status
        self._last_error = None
        if result.kind == "ok" and self._vocabulary.is_terminal(status):
            await self._complete(status, result.payload)
            return

        self._update(current_status=status, message=f"Status atual: {status}")
        if attempts >= max_attempts:
            self._timeout()
            return
        self._notify(self._sink.on_status_change)

    async def _complete(self, status: str, payload: Dict[str, Any]) -> None:
        result_status = self._vocabulary.classify(status).value
        self._update(current_status=status, result_status=result_status)
        try:
            # blocking ORM work stays off the event loop
            await run_in_threadpool(self._persister.save, self._reference, payload, self._owner_id)
        except PersistenceError as e:
            logger.error(f"NFSe {self._reference} {status}, mas não foi salva: {e}")
            self._finish("error", result_data=payload, error_kind="persistence",
                         error_message=f"NFSe {status}, mas não foi possível salvar: {e}")
            return
        self._finish("completed", result_data=payload, message=f"NFSe {status}")

    def _timeout(self) -> None:
        msg = f"Timeout: NFSe não processada após {self._status.max_attempts} tentativas"
        if self._last_error:
            msg += f" (último erro: {self._last_error})"
        self._finish("error", error_kind="timeout", error_message=msg)

    def _finish(self, status: str, **fields) -> None:
        self._update(status=status, time_elapsed=self._elapsed(),
                     message=fields.pop("message", fields.get("error_message")), **fields)
        self._finished_at = self._clock()
        self._release()
        if status == "completed":
            self._notify(self._sink.on_complete)
        else:
            self._notify(self._sink.on_error)

    def _release(self) -> None:
        if self._done is not None:
            self._done.set()

    def _update(self, **fields) -> None:
        self._status = self._status.model_copy(update=fields)

    def _elapsed(self) -> int:
        return int(self._clock() - self._started_at)

    def _notify(self, hook: Callable[[MonitoringStatus], None]) -> None:
        try:
            hook(self.snapshot())
        except Exception:
            logger.exception(f"Falha ao notificar status da NFSe {self._reference}")


class MonitorRegistry:
    """Active monitors keyed by reference: at most one live session per NFS-e."""

    def __init__(self, monitor_factory: Callable[[], PollingMonitor],
                 retention_s: float = MONITOR_RETENTION_SECONDS):
        self._factory = monitor_factory
        self._retention = retention_s
        self._monitors: Dict[str, PollingMonitor] = {}

    def prune(self) -> int:
        """Forget sessions that finished more than `retention_s` ago."""
        expired = [ref for ref, m in self._monitors.items()
                   if m.idle_for() is not None and m.idle_for() >= self._retention]
        for ref in expired:
            del self._monitors[ref]
        if expired:
            logger.info(f"{len(expired)} monitoramento(s) finalizado(s) removido(s) da memória")
        return len(expired)

    async def start(self, reference: str, owner_id, **options) -> MonitoringStatus:
        self.prune()
        existing = self._monitors.get(reference)
        if existing is not None and existing.is_running:
            logger.warning(f"NFSe {reference} já está sendo monitorada")
            return existing.snapshot()
        monitor = self._factory()
        self._monitors[reference] = monitor
        return await monitor.start(reference, owner_id, **options)

    def monitor(self, reference: str) -> Optional[PollingMonitor]:
        return self._monitors.get(reference)

    def get(self, reference: str) -> Optional[MonitoringStatus]:
        monitor = self._monitors.get(reference)
        return monitor.snapshot() if monitor else None

    def stop(self, reference: str) -> Optional[MonitoringStatus]:
        monitor = self._monitors.get(reference)
        return monitor.stop() if monitor else None

    async def wait(self, reference: str) -> Optional[MonitoringStatus]:
        monitor = self._monitors.get(reference)
        return await monitor.wait() if monitor else None

    def active(self) -> list:
        return [ref for ref, m in self._monitors.items() if m.is_running]

    async def shutdown(self) -> None:
        for ref in self.active():
            self._monitors[ref].stop()
        # let cancelled tasks unwind before the event loop goes away
        await asyncio.sleep(0)
