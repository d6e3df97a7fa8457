"""Tests for the conditional-update repositories against in-memory SQLite."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from judicature_escrow.domain.enums import EventType, SubjectType
from judicature_escrow.infrastructure.database.orm_models import PaymentRequest
from judicature_escrow.infrastructure.database.repositories import (
    AuditRepository,
    OrderRepository,
    PaymentRequestRepository,
)


def _request(request_id: str = "PRQ-TEST-0001") -> PaymentRequest:
    return PaymentRequest(
        request_id=request_id,
        proposer_id="lawyer-1",
        counterparty_id="client-1",
        amount=25000,
        currency="inr",
        service_type="consultation",
        description="Initial consultation on a property dispute",
        expires_at=datetime.now(UTC) + timedelta(days=7),
    )


class TestOrderRepository:
    @pytest.mark.asyncio
    async def test_conditional_update_wins_and_bumps_version(
        self, session: AsyncSession, make_order: Any
    ) -> None:
        order = await make_order("pending")
        repo = OrderRepository(session)
        stored = await repo.get_by_order_id(order.order_id, refresh=True)
        version = stored.version

        won = await repo.conditional_update(
            stored, "pending", "unfunded", cancellation_reason="changed mind"
        )

        assert won
        assert stored.version == version + 1
        assert stored.cancellation_reason == "changed mind"

    @pytest.mark.asyncio
    async def test_conditional_update_loses_on_stale_status(
        self, session: AsyncSession, make_order: Any
    ) -> None:
        order = await make_order("paid")
        repo = OrderRepository(session)
        stored = await repo.get_by_order_id(order.order_id, refresh=True)
        version = stored.version

        assert not await repo.conditional_update(stored, "pending", status="cancelled")
        assert not await repo.conditional_update(stored, "paid", "released", status="completed")

        fresh = await repo.get_by_order_id(order.order_id, refresh=True)
        assert fresh.status == "paid"
        assert fresh.version == version

    @pytest.mark.asyncio
    async def test_tuple_of_expected_statuses(
        self, session: AsyncSession, make_order: Any
    ) -> None:
        order = await make_order("paid")
        repo = OrderRepository(session)
        stored = await repo.get_by_order_id(order.order_id, refresh=True)

        assert await repo.conditional_update(
            stored, ("paid", "in_progress"), needs_attention=False
        )

    @pytest.mark.asyncio
    async def test_flag_attention(self, session: AsyncSession, make_order: Any) -> None:
        order = await make_order("pending")
        repo = OrderRepository(session)
        stored = await repo.get_by_order_id(order.order_id, refresh=True)

        await repo.flag_attention(stored, "orphaned intent")
        flagged = await repo.list_needing_attention()

        assert [o.order_id for o in flagged] == [order.order_id]
        assert flagged[0].attention_reason == "orphaned intent"

    @pytest.mark.asyncio
    async def test_list_for_participant(self, session: AsyncSession, make_order: Any) -> None:
        await make_order("pending")
        await make_order("paid")
        repo = OrderRepository(session)

        orders, total = await repo.list_for_participant("lawyer-1", as_payer=False)
        assert total == 2
        assert len(orders) == 2

        paid, paid_total = await repo.list_for_participant("client-1", status="paid")
        assert paid_total == 1
        assert paid[0].status == "paid"

        none, none_total = await repo.list_for_participant("someone-else")
        assert none == []
        assert none_total == 0


class TestPaymentRequestRepository:
    @pytest.mark.asyncio
    async def test_require_unlinked_admits_one_winner(self, session: AsyncSession) -> None:
        repo = PaymentRequestRepository(session)
        request = await repo.create(_request())
        request = await repo.get_by_request_id(request.request_id, refresh=True)
        await repo.conditional_update(request, "pending", status="accepted")
        await session.commit()

        first = await repo.conditional_update(
            request, "accepted", require_unlinked=True, order_id="ORD-A"
        )
        second = await repo.conditional_update(
            request, "accepted", require_unlinked=True, order_id="ORD-B"
        )

        assert first
        assert not second
        fresh = await repo.get_by_request_id(request.request_id, refresh=True)
        assert fresh.order_id == "ORD-A"

    @pytest.mark.asyncio
    async def test_expired_filter(self, session: AsyncSession) -> None:
        repo = PaymentRequestRepository(session)
        live = _request("PRQ-LIVE-0001")
        lapsed = _request("PRQ-GONE-0001")
        lapsed.expires_at = datetime.now(UTC) - timedelta(hours=1)
        await repo.create(live)
        await repo.create(lapsed)
        await session.commit()

        current, _ = await repo.list_for_participant("client-1", expired=False)
        old, _ = await repo.list_for_participant("client-1", expired=True)

        assert [r.request_id for r in current] == ["PRQ-LIVE-0001"]
        assert [r.request_id for r in old] == ["PRQ-GONE-0001"]


class TestAuditRepository:
    @pytest.mark.asyncio
    async def test_record_and_read_back(self, session: AsyncSession) -> None:
        repo = AuditRepository(session)
        await repo.record(
            SubjectType.PAYMENT_REQUEST,
            "PRQ-TEST-0001",
            EventType.REQUEST_CREATED,
            None,
            "pending",
            actor="lawyer-1",
            metadata={"amount": 25000},
        )
        await session.commit()

        [event] = await repo.get_by_subject(SubjectType.PAYMENT_REQUEST, "PRQ-TEST-0001")
        assert event.event_type == "REQUEST_CREATED"
        assert event.old_status is None
        assert event.new_status == "pending"
        assert event.metadata_json == {"amount": 25000}
        assert await repo.get_by_subject(SubjectType.ORDER, "PRQ-TEST-0001") == []
