"""
Notification sinks for the NFS-e monitor.

A sink receives a snapshot of the monitoring session whenever it changes:
on every non-final tick, on completion and on failure.
"""
import logging
from schemas.schemas import MonitoringStatus

logger = logging.getLogger(__name__)


class NotificationSink:
    """Base sink; every hook is optional."""

    def on_status_change(self, status: MonitoringStatus) -> None:
        pass

    def on_complete(self, status: MonitoringStatus) -> None:
        pass

    def on_error(self, status: MonitoringStatus) -> None:
        pass


class LoggingNotificationSink(NotificationSink):
    def on_status_change(self, status: MonitoringStatus) -> None:
        logger.info(f"NFSe {status.referencia}: {status.status} "
                    f"({status.attempts}/{status.max_attempts}) {status.current_status or ''}")

    def on_complete(self, status: MonitoringStatus) -> None:
        logger.info(f"NFSe {status.referencia} finalizada: {status.current_status} "
                    f"após {status.attempts} tentativas ({status.time_elapsed}s)")

    def on_error(self, status: MonitoringStatus) -> None:
        logger.error(f"NFSe {status.referencia} falhou [{status.error_kind}]: {status.error_message}")
