"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Every status change goes through ``conditional_update``: a single
``UPDATE ... WHERE id = ? AND status = ? [AND escrow_status = ?]`` whose
affected-row count tells the caller whether it won. The loser of a race
gets ``False`` and must re-read.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select, update

from judicature_escrow.infrastructure.database.orm_models import (
    AuditEvent,
    Deliverable,
    Order,
    PaymentRequest,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from judicature_escrow.domain.enums import EventType, SubjectType


class OrderRepository:
    """Data access for escrow orders."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, order: Order) -> Order:
        """Insert a new order."""
        self._session.add(order)
        await self._session.flush()
        return order

    async def get_by_order_id(self, order_id: str, *, refresh: bool = False) -> Order | None:
        """Fetch an order by its human readable id.

        ``refresh`` bypasses the identity map so a caller that lost a
        conditional update sees the row as the winner left it.
        """
        stmt = select(Order).where(Order.order_id == order_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_payment_intent(self, intent_id: str) -> Order | None:
        result = await self._session.execute(
            select(Order).where(Order.payment_intent_id == intent_id)
        )
        return result.scalar_one_or_none()

    async def list_for_participant(
        self,
        user_id: str | None = None,
        *,
        as_payer: bool = True,
        as_payee: bool = True,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        """List orders by participant and status, newest first, with a total count."""
        stmt = select(Order)
        if user_id is not None:
            clauses = []
            if as_payer:
                clauses.append(Order.payer_id == user_id)
            if as_payee:
                clauses.append(Order.payee_id == user_id)
            stmt = stmt.where(or_(*clauses))
        if status is not None:
            stmt = stmt.where(Order.status == status)

        total = await self._session.scalar(select(func.count()).select_from(stmt.subquery()))
        result = await self._session.execute(
            stmt.order_by(Order.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all()), int(total or 0)

    async def list_needing_attention(self) -> list[Order]:
        result = await self._session.execute(
            select(Order).where(Order.needs_attention.is_(True)).order_by(Order.updated_at.asc())
        )
        return list(result.scalars().all())

    async def conditional_update(
        self,
        order: Order,
        expected_status: str | tuple[str, ...],
        expected_escrow: str | tuple[str, ...] | None = None,
        *,
        require_no_open_capture: bool = False,
        **values: Any,
    ) -> bool:
        """Atomically apply ``values`` if the row still has the expected state.

        ``require_no_open_capture`` additionally requires that no capture
        attempt is recorded on the row, so only one payment method can be
        in flight per order.

        Returns True and refreshes ``order`` on success; returns False, leaving
        the row untouched, if another writer got there first.
        """
        stmt = update(Order).where(Order.id == order.id)
        stmt = stmt.where(_matches(Order.status, expected_status))
        if expected_escrow is not None:
            stmt = stmt.where(_matches(Order.escrow_status, expected_escrow))
        if require_no_open_capture:
            stmt = stmt.where(Order.capture_idempotency_key.is_(None))
        stmt = stmt.values(
            **values,
            version=Order.version + 1,
            updated_at=datetime.now(UTC),
        ).execution_options(synchronize_session=False)

        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return False
        await self._session.refresh(order)
        return True

    async def flag_attention(self, order: Order, reason: str) -> Order:
        """Mark an order for manual follow-up regardless of its state."""
        await self._session.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(
                needs_attention=True,
                attention_reason=reason,
                version=Order.version + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(order)
        return order


class DeliverableRepository:
    """Data access for order deliverables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, deliverable: Deliverable) -> Deliverable:
        self._session.add(deliverable)
        await self._session.flush()
        return deliverable

    async def get_by_id(self, deliverable_id: uuid.UUID) -> Deliverable | None:
        result = await self._session.execute(
            select(Deliverable).where(Deliverable.id == deliverable_id)
        )
        return result.scalar_one_or_none()

    async def get_by_order(self, order_pk: uuid.UUID) -> list[Deliverable]:
        """Fetch all deliverables for an order, oldest version first."""
        result = await self._session.execute(
            select(Deliverable)
            .where(Deliverable.order_pk == order_pk)
            .order_by(Deliverable.version.asc())
        )
        return list(result.scalars().all())

    async def next_version(self, order_pk: uuid.UUID) -> int:
        current = await self._session.scalar(
            select(func.max(Deliverable.version)).where(Deliverable.order_pk == order_pk)
        )
        return int(current or 0) + 1

    async def conditional_update(
        self,
        deliverable: Deliverable,
        expected_status: str,
        **values: Any,
    ) -> bool:
        result = await self._session.execute(
            update(Deliverable)
            .where(Deliverable.id == deliverable.id, Deliverable.status == expected_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(deliverable)
        return True

    async def delete(self, deliverable: Deliverable) -> None:
        await self._session.delete(deliverable)
        await self._session.flush()


class PaymentRequestRepository:
    """Data access for payment requests."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, request: PaymentRequest) -> PaymentRequest:
        self._session.add(request)
        await self._session.flush()
        return request

    async def get_by_request_id(
        self, request_id: str, *, refresh: bool = False
    ) -> PaymentRequest | None:
        stmt = select(PaymentRequest).where(PaymentRequest.request_id == request_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_participant(
        self,
        user_id: str | None = None,
        *,
        as_proposer: bool = True,
        as_counterparty: bool = True,
        status: str | None = None,
        expired: bool | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[PaymentRequest], int]:
        """List requests by participant and stored status, newest first.

        ``expired`` narrows on the expiry timestamp, which lets callers tell
        live pending requests from lapsed ones.
        """
        stmt = select(PaymentRequest)
        if user_id is not None:
            clauses = []
            if as_proposer:
                clauses.append(PaymentRequest.proposer_id == user_id)
            if as_counterparty:
                clauses.append(PaymentRequest.counterparty_id == user_id)
            stmt = stmt.where(or_(*clauses))
        if status is not None:
            stmt = stmt.where(PaymentRequest.status == status)
        if expired is not None:
            now = datetime.now(UTC)
            if expired:
                stmt = stmt.where(PaymentRequest.expires_at <= now)
            else:
                stmt = stmt.where(PaymentRequest.expires_at > now)

        total = await self._session.scalar(select(func.count()).select_from(stmt.subquery()))
        result = await self._session.execute(
            stmt.order_by(PaymentRequest.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all()), int(total or 0)

    async def conditional_update(
        self,
        request: PaymentRequest,
        expected_status: str,
        *,
        require_unlinked: bool = False,
        **values: Any,
    ) -> bool:
        """Atomically update a request still in ``expected_status``.

        ``require_unlinked`` additionally demands that no order has been
        attached yet, which makes claiming the request for payment a
        single-winner operation.
        """
        stmt = update(PaymentRequest).where(
            PaymentRequest.id == request.id,
            PaymentRequest.status == expected_status,
        )
        if require_unlinked:
            stmt = stmt.where(PaymentRequest.order_id.is_(None))
        stmt = stmt.values(
            **values,
            version=PaymentRequest.version + 1,
            updated_at=datetime.now(UTC),
        ).execution_options(synchronize_session=False)

        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return False
        await self._session.refresh(request)
        return True


class AuditRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        subject_type: SubjectType,
        subject_id: str,
        event_type: EventType,
        old_status: str | None,
        new_status: str,
        actor: str = "system",
        escrow_status: str | None = None,
        metadata: dict | None = None,
    ) -> AuditEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = AuditEvent(
            subject_type=subject_type.value,
            subject_id=subject_id,
            event_type=event_type.value,
            old_status=str(old_status) if old_status else None,
            new_status=str(new_status),
            escrow_status=str(escrow_status) if escrow_status else None,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_subject(self, subject_type: SubjectType, subject_id: str) -> list[AuditEvent]:
        """Fetch all events for a subject in chronological order."""
        result = await self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.subject_type == subject_type.value,
                AuditEvent.subject_id == subject_id,
            )
            .order_by(AuditEvent.created_at.asc())
        )
        return list(result.scalars().all())


def _matches(column: Any, expected: str | tuple[str, ...]) -> Any:
    if isinstance(expected, tuple):
        return column.in_(expected)
    return column == expected
