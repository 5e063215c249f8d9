"""
Gateway audit trail.

One row per outbound call attempt. A row is only updated in place to record
the outcome of that same attempt; retries and repairs always append.
"""

import json
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from src.config.constants import HTML_MARKERS, GatewayLogStatus, enum_value
from src.database.connection import AsyncSessionLocal
from src.database.models.gateway_log import GatewayLog
from src.shared.error_handler import ErrorHandler


def serialize_payload(payload: Any) -> Optional[str]:
    """Compact JSON for dicts/lists, strings stored verbatim."""
    if payload is None:
        return None
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, default=str, separators=(",", ":"))


def parse_payload(raw: Optional[str]) -> Any:
    """Best-effort JSON decode of a stored payload; returns None when unreadable."""
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def is_html_tainted(raw: Optional[str]) -> bool:
    """True when a stored payload contains an HTML document (gateway error page)."""
    if not raw:
        return False
    lowered = raw.lower()
    return any(marker in lowered for marker in HTML_MARKERS)


def is_authoritative_success(log: Optional[GatewayLog]) -> bool:
    """A SUCCESS row only counts when its response is not an HTML error page."""
    if log is None or log.status != GatewayLogStatus.SUCCESS.value:
        return False
    return not is_html_tainted(log.response_data)


class GatewayLogService:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._error_handler = ErrorHandler(__name__)
        self._session_factory = session_factory or AsyncSessionLocal

    async def record(
        self,
        gateway: str,
        correlation_id: Optional[str],
        status: GatewayLogStatus,
        request: Any = None,
        response: Any = None,
    ) -> int:
        """Append a log row and return its id."""
        async with self._session_factory() as session:
            log = GatewayLog(
                gateway=enum_value(gateway),
                transaction_id=correlation_id,
                status=GatewayLogStatus(status).value,
                request_data=serialize_payload(request),
                response_data=serialize_payload(response),
            )
            session.add(log)
            await session.commit()
            log_id = log.id

        self._error_handler.logger.info(
            f"Gateway log #{log_id} recorded | {enum_value(gateway)} | {correlation_id} | {GatewayLogStatus(status).value}"
        )
        return log_id

    async def update_status(
        self,
        log_id: int,
        status: GatewayLogStatus,
        response: Any = None,
    ) -> Optional[GatewayLog]:
        """Record the outcome of an existing attempt."""
        async with self._session_factory() as session:
            log = await session.get(GatewayLog, log_id)
            if not log:
                self._error_handler.logger.warning(f"Gateway log #{log_id} not found for update")
                return None

            log.status = GatewayLogStatus(status).value
            if response is not None:
                log.response_data = serialize_payload(response)
            await session.commit()
            return log

    async def get(self, log_id: int) -> Optional[GatewayLog]:
        async with self._session_factory() as session:
            return await session.get(GatewayLog, log_id)

    async def find(
        self,
        gateway: Optional[str] = None,
        correlation_id: Optional[str] = None,
        status: Optional[GatewayLogStatus] = None,
        response_contains: Optional[str] = None,
        request_contains: Optional[str] = None,
        newest_first: bool = True,
        limit: Optional[int] = None,
    ) -> List[GatewayLog]:
        """Filter the audit trail. Most recent rows come first by default."""
        query = select(GatewayLog)
        if gateway is not None:
            query = query.filter(GatewayLog.gateway == enum_value(gateway))
        if correlation_id is not None:
            query = query.filter(GatewayLog.transaction_id == correlation_id)
        if status is not None:
            query = query.filter(GatewayLog.status == GatewayLogStatus(status).value)
        if response_contains:
            query = query.filter(GatewayLog.response_data.contains(response_contains, autoescape=True))
        if request_contains:
            query = query.filter(GatewayLog.request_data.contains(request_contains, autoescape=True))

        query = query.order_by(GatewayLog.id.desc() if newest_first else GatewayLog.id.asc())
        if limit:
            query = query.limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def find_latest(self, **filters) -> Optional[GatewayLog]:
        logs = await self.find(newest_first=True, limit=1, **filters)
        return logs[0] if logs else None
