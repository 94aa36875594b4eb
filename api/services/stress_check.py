import logging
import threading
from contextlib import contextmanager
from typing import Optional, Set

from pydantic import BaseModel

from lib.error_handler import CheckInProgressError, QuotaExceededError, StorageError
from lib.models import CallReport, QuotaStatus
from .analysis import AnalysisGateway
from .quota import QuotaLedger
from .storage import ReportStore

logger = logging.getLogger(__name__)

class StressCheckOutcome(BaseModel):
    report: CallReport
    quota: QuotaStatus
    warning: Optional[str] = None

class StressCheckService:
    """Runs one check: quota gate, analysis, report write, quota increment.

    Checks for the same identity are serialized. A second request arriving
    while one is in flight is rejected instead of racing the quota check.
    """

    def __init__(self, analysis_gateway: AnalysisGateway):
        self.gateway = analysis_gateway
        # Identity keys with a check running. Entries leave when the check ends.
        self._in_flight: Set[str] = set()
        self._guard = threading.Lock()

    @contextmanager
    def _exclusive(self, identity_key: str):
        with self._guard:
            if identity_key in self._in_flight:
                logger.warning(f"Rejected concurrent stress check for {identity_key}")
                raise CheckInProgressError()
            self._in_flight.add(identity_key)
        try:
            yield
        finally:
            with self._guard:
                self._in_flight.discard(identity_key)

    async def run(
        self,
        identity_key: str,
        ledger: QuotaLedger,
        store: ReportStore,
        payload: str,
        media_type: str
    ) -> StressCheckOutcome:
        with self._exclusive(identity_key):
            status = await ledger.status()
            warning = status.reset_error
            if not status.can_check:
                if status.reset_error:
                    raise StorageError(
                        f"Quota reset failed: {status.reset_error}",
                        user_message=status.reset_error
                    )
                logger.info(f"Quota exhausted for {identity_key}: {status.used}/{status.limit}")
                raise QuotaExceededError(ledger.scope, status.used, status.limit)

            result = await self.gateway.analyze(payload, media_type)
            report = await store.save(result)
            status = await ledger.record_check()
            logger.info(f"Stress check {report.id} stored for {identity_key}")
            return StressCheckOutcome(report=report, quota=status, warning=warning)
