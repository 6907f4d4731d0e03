"""Audit Query Service.

Read path over the audit store: paged retrieval of one table's audit records
within a time range, and the list of audited tables. It runs outside the
audit hot path.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from src.domain.cdc_models import AuditPage, utc_now
from src.domain.ports import AuditStorePort, Result

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000

_RELATIVE_RANGE = re.compile(r"^(\d+)\s*([mhdw])$")
_RANGE_UNITS = {'m': 'minutes', 'h': 'hours', 'd': 'days', 'w': 'weeks'}


def parse_time_range(time_range: str, end_time: datetime) -> datetime:
    """Start time for a relative range such as "1h", "24h" or "7d".

    Raises:
        ValueError: If the range is not <number><m|h|d|w> or is zero
    """
    match = _RELATIVE_RANGE.match(time_range.strip().lower())
    if not match or int(match.group(1)) == 0:
        raise ValueError(f"Invalid time range: {time_range!r} (expected e.g. 1h, 24h, 7d)")
    amount, unit = int(match.group(1)), match.group(2)
    return end_time - timedelta(**{_RANGE_UNITS[unit]: amount})


class AuditQueryService:
    """Service for querying the audit trail.

    Parameters:
        store: Audit store to read from

    Example Usage:
        ```python
        service = AuditQueryService(store)
        result = service.get_recent_logs("orders", time_range="7d", page=0, page_size=50)
        if result.is_success():
            for record in result.value.records:
                print(record.operation, record.primary_key_value)
        ```
    """

    def __init__(self, store: AuditStorePort):
        self.store = store

    def get_audit_logs(
        self,
        table_name: str,
        start_time: datetime,
        end_time: datetime,
        page: int = 0,
        page_size: int = 10
    ) -> Result[AuditPage]:
        """Page through one table's audit records between two instants (inclusive).

        Returns:
            Result[AuditPage], or a ValidationError failure for bad arguments
        """
        error = self._validate(table_name, start_time, end_time, page, page_size)
        if error is not None:
            return Result.failure_result(error, error_type="ValidationError")

        result = self.store.query(table_name.strip().lower(), start_time, end_time, page, page_size)
        if not result.is_success():
            logger.error(f"Failed to query audit logs for {table_name}: {result.error}")
        return result

    def get_recent_logs(
        self,
        table_name: str,
        time_range: str = "24h",
        page: int = 0,
        page_size: int = 10,
        now: Optional[datetime] = None
    ) -> Result[AuditPage]:
        """Page through audit records of the last time_range (e.g. "1h", "7d")."""
        end_time = now or utc_now()
        try:
            start_time = parse_time_range(time_range, end_time)
        except ValueError as e:
            return Result.failure_result(str(e), error_type="ValidationError")
        return self.get_audit_logs(table_name, start_time, end_time, page, page_size)

    def list_audited_tables(self) -> Result[list[str]]:
        """Distinct audited table names, sorted."""
        result = self.store.list_audited_tables()
        if not result.is_success():
            logger.error(f"Failed to list audited tables: {result.error}")
            return Result.failure_result(
                result.error, error_type=result.error_type, error_details=result.error_details
            )
        return Result.success_result(sorted(result.value))

    @staticmethod
    def _validate(
        table_name: str,
        start_time: datetime,
        end_time: datetime,
        page: int,
        page_size: int
    ) -> Optional[str]:
        if not table_name or not table_name.strip():
            return "table_name must not be empty"
        if page < 0:
            return f"page must be >= 0, got {page}"
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            return f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}"
        if start_time > end_time:
            return "start_time must not be after end_time"
        return None
