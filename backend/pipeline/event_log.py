"""
Event Log
=========
Operational "black box" for the checkout pipeline. Integrity anomalies
(payment with no order, stock shortfall, payment for a cancelled order)
and notification failures are appended here with a severity so that
admin tooling can surface them.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

import structlog

import database
from schemas.orders import SystemEvent


class IEventLog(ABC):

    @abstractmethod
    async def record(
        self,
        event_type: str,
        payload: dict[str, Any],
        order_id: Optional[str] = None,
        component: Optional[str] = None,
        severity: str = "INFO",
    ) -> str:
        """Append an event; returns its id"""
        pass

    @abstractmethod
    async def recent(
        self,
        limit: int = 50,
        severity: Optional[str] = None,
        event_types: Optional[list[str]] = None,
        order_id: Optional[str] = None,
    ) -> list[SystemEvent]:
        pass

    @abstractmethod
    async def count(self, event_type: str, order_id: str) -> int:
        pass


class InMemoryEventLog(IEventLog):
    """Append-only event log"""

    def __init__(self):
        self._events: list[SystemEvent] = []
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="event_log")

    async def record(
        self,
        event_type: str,
        payload: dict[str, Any],
        order_id: Optional[str] = None,
        component: Optional[str] = None,
        severity: str = "INFO",
    ) -> str:
        event = SystemEvent(
            event_type=event_type,
            order_id=order_id,
            component=component,
            payload=payload,
            severity=severity,
        )
        async with self._lock:
            self._events.append(event)

        log_method = getattr(self._logger, severity.lower(), self._logger.info)
        log_method(
            event_type,
            event_id=event.id[:8],
            order_id=order_id,
            source=component,
            **{k: v for k, v in payload.items() if k not in database.RESERVED_LOG_KEYS}
        )
        return event.id

    async def recent(
        self,
        limit: int = 50,
        severity: Optional[str] = None,
        event_types: Optional[list[str]] = None,
        order_id: Optional[str] = None,
    ) -> list[SystemEvent]:
        async with self._lock:
            events = [
                e for e in reversed(self._events)
                if (severity is None or e.severity == severity)
                and (not event_types or e.event_type in event_types)
                and (order_id is None or e.order_id == order_id)
            ]
        return events[:limit]

    async def count(self, event_type: str, order_id: str) -> int:
        async with self._lock:
            return sum(
                1 for e in self._events
                if e.event_type == event_type and e.order_id == order_id
            )


class PostgresEventLog(IEventLog):
    """Writes through ``database.log_event`` into system_events"""

    async def record(
        self,
        event_type: str,
        payload: dict[str, Any],
        order_id: Optional[str] = None,
        component: Optional[str] = None,
        severity: str = "INFO",
    ) -> str:
        return await database.log_event(
            order_id=order_id,
            event_type=event_type,
            payload=payload,
            component=component,
            severity=severity,
        )

    async def recent(
        self,
        limit: int = 50,
        severity: Optional[str] = None,
        event_types: Optional[list[str]] = None,
        order_id: Optional[str] = None,
    ) -> list[SystemEvent]:
        rows = await database.get_recent_events(
            limit=limit,
            event_types=event_types,
            severity=severity,
            order_id=order_id,
        )
        return [
            SystemEvent(
                id=str(row["id"]),
                timestamp=row["timestamp"],
                event_type=row["event_type"],
                order_id=str(row["order_id"]) if row["order_id"] else None,
                component=row["component"],
                payload=row["payload"],
                severity=row["severity"],
            )
            for row in rows
        ]

    async def count(self, event_type: str, order_id: str) -> int:
        return await database.count_events(event_type, order_id)
