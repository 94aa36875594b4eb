import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from lib.error_handler import StorageError
from lib.local_storage import LocalStorage
from lib.models import CallReport, StressAnalysisResult, utcnow

logger = logging.getLogger(__name__)

ANONYMOUS_REPORTS_KEY = 'stressCallAnonymousReports'

def generate_report_id() -> str:
    return str(uuid.uuid4())

class ReportStore(ABC):
    """Where an identity's reports live. Both variants list newest first."""

    scope: str

    @abstractmethod
    async def save(self, result: StressAnalysisResult) -> CallReport:
        ...

    @abstractmethod
    async def list(self) -> List[CallReport]:
        ...

class AnonymousReportStore(ReportStore):
    scope = 'anonymous'

    def __init__(self, local_storage: LocalStorage):
        self.local_storage = local_storage

    def _read(self) -> List[Dict[str, Any]]:
        raw = self.local_storage.get_item(ANONYMOUS_REPORTS_KEY)
        if not raw:
            return []
        try:
            reports = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Error parsing anonymous reports from local storage: {str(e)}")
            return []
        if not isinstance(reports, list):
            logger.error("Anonymous reports slot does not hold a list; ignoring it")
            return []
        return reports

    async def save(self, result: StressAnalysisResult) -> CallReport:
        report = CallReport.on_demand(generate_report_id(), result)
        reports = self._read()
        reports.insert(0, report.model_dump(mode='json', by_alias=True))
        self.local_storage.set_item(ANONYMOUS_REPORTS_KEY, json.dumps(reports))
        logger.info(f"Saved anonymous report {report.id}")
        return report

    async def list(self) -> List[CallReport]:
        reports = []
        for data in self._read():
            try:
                reports.append(CallReport.model_validate(data))
            except PydanticValidationError as e:
                logger.warning(f"Skipping unreadable anonymous report: {str(e)}")
        return reports

class AccountReportStore(ReportStore):
    scope = 'authenticated'

    def __init__(self, supabase_client, user_id: str):
        self.supabase = supabase_client
        self.user_id = user_id
        self.reports_table = 'reports'

    async def save(self, result: StressAnalysisResult) -> CallReport:
        # The id is fixed before the write so a retried insert targets the same row.
        report_id = generate_report_id()
        draft = CallReport.on_demand(report_id, result)
        data = {
            'id': report_id,
            'user_id': self.user_id,
            'contact_name': draft.contact_name,
            'contact_number': draft.contact_number,
            'call_duration': draft.call_duration,
            'stress_analysis': result.model_dump(mode='json'),
        }

        try:
            logger.info(f"Storing report {report_id} for user {self.user_id}")
            response = self.supabase.table(self.reports_table).insert(data).execute()
            if hasattr(response, 'error') and response.error:
                raise Exception(f"Supabase error: {response.error}")
        except Exception as e:
            logger.error(f"Failed to store report: {str(e)}")
            raise StorageError(f"Failed to store report: {str(e)}") from e

        # The row timestamp is assigned by the database.
        row = response.data[0] if getattr(response, 'data', None) else None
        if row and row.get('timestamp'):
            return _report_from_row(row)
        return draft

    async def list(self) -> List[CallReport]:
        try:
            response = self.supabase.table(self.reports_table)\
                .select('*')\
                .eq('user_id', self.user_id)\
                .order('timestamp', desc=True)\
                .execute()
            if hasattr(response, 'error') and response.error:
                raise Exception(f"Supabase error: {response.error}")
        except Exception as e:
            logger.error(f"Failed to fetch reports: {str(e)}")
            raise StorageError(f"Failed to fetch reports: {str(e)}") from e

        return [_report_from_row(row) for row in response.data or []]

def _report_from_row(row: Dict[str, Any]) -> CallReport:
    analysis = row.get('stress_analysis')
    return CallReport(
        id=row['id'],
        contact_name=row.get('contact_name'),
        contact_number=row.get('contact_number') or '',
        call_duration=row.get('call_duration') or 'N/A',
        stress_analysis=StressAnalysisResult.model_validate(analysis) if analysis else None,
        timestamp=_parse_timestamp(row.get('timestamp')),
    )

def _parse_timestamp(value: Optional[Any]) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    return utcnow()

def report_store_for(identity, supabase_client=None, local_storage: Optional[LocalStorage] = None) -> ReportStore:
    """Pick the backend for the caller once, at the top of a workflow."""
    if identity is not None:
        if supabase_client is None:
            raise StorageError("No document store configured for authenticated reports")
        return AccountReportStore(supabase_client, identity.uid)
    if local_storage is None:
        raise StorageError("No local storage available for anonymous reports")
    return AnonymousReportStore(local_storage)
