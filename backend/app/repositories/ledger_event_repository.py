"""Raw ledger notification log keyed by (signature, event type)."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import asc, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import LedgerEvent, utcnow


class LedgerEventRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, tx_signature: str, event_type: str) -> LedgerEvent | None:
        stmt = select(LedgerEvent).where(
            LedgerEvent.tx_signature == tx_signature,
            LedgerEvent.event_type == event_type,
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def record(
        self,
        *,
        tx_signature: str,
        event_type: str,
        slot: int,
        block_time: datetime | None,
        payload: dict[str, Any],
    ) -> LedgerEvent:
        """Insert the event row, or return the existing one for a re-delivery."""

        existing = self.get(tx_signature, event_type)
        if existing is not None:
            return existing

        row = LedgerEvent(
            tx_signature=tx_signature,
            event_type=event_type,
            slot=slot,
            block_time=block_time,
            payload=payload,
            processed=False,
        )
        try:
            with self._session.begin_nested():
                self._session.add(row)
        except IntegrityError:
            # A concurrent delivery won the insert.
            existing = self.get(tx_signature, event_type)
            if existing is None:
                raise
            return existing
        return row

    def mark_processed(self, row: LedgerEvent) -> None:
        row.processed = True
        row.error = None
        row.processed_at = utcnow()

    def mark_failed(self, row: LedgerEvent, error: str) -> None:
        row.processed = False
        row.error = error

    def list_pending(self, *, limit: int = 100) -> list[LedgerEvent]:
        stmt = (
            select(LedgerEvent)
            .where(LedgerEvent.processed.is_(False))
            .order_by(asc(LedgerEvent.slot), asc(LedgerEvent.event_id))
            .limit(limit)
        )
        return list(self._session.execute(stmt).scalars())
