"""Durable records of failed terminal writes, kept for manual triage."""

from __future__ import annotations

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from app.models import FinalizationError, Market, utcnow


class FinalizationErrorRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def count_unresolved(self, market_id: str) -> int:
        stmt = select(func.count()).select_from(FinalizationError).where(
            FinalizationError.market_id == market_id,
            FinalizationError.resolved_at.is_(None),
        )
        return int(self._session.execute(stmt).scalar_one())

    def record_failure(self, market: Market, error_message: str) -> FinalizationError:
        """Append one error row; ``attempt_count`` continues the unresolved streak."""

        attempt = self.count_unresolved(market.market_id) + 1
        record = FinalizationError(
            market_id=market.market_id,
            market_on_chain_address=market.on_chain_address,
            error_message=error_message,
            resolution_proposed_at=market.resolution_proposed_at,
            attempt_count=attempt,
            created_at=utcnow(),
        )
        self._session.add(record)
        self._session.flush()
        return record

    def list_errors(
        self,
        *,
        unresolved_only: bool = True,
        market_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[FinalizationError], int]:
        filters = []
        if unresolved_only:
            filters.append(FinalizationError.resolved_at.is_(None))
        if market_id:
            filters.append(FinalizationError.market_id == market_id)

        total = self._session.execute(
            select(func.count()).select_from(FinalizationError).where(*filters)
        ).scalar_one()
        stmt = (
            select(FinalizationError)
            .where(*filters)
            .order_by(desc(FinalizationError.created_at), desc(FinalizationError.error_id))
            .offset(offset)
            .limit(limit)
        )
        return list(self._session.execute(stmt).scalars()), int(total)

    def mark_resolved(
        self, error_id: int, *, resolved_by: str, notes: str | None = None
    ) -> FinalizationError | None:
        record = self._session.get(FinalizationError, error_id)
        if record is None:
            return None
        record.resolved_at = utcnow()
        record.resolved_by = resolved_by
        record.resolution_notes = notes
        return record
