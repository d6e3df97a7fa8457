"""Typed command objects for every mutating escrow operation.

Each command checks its own field-level rules against the injected
EscrowPolicy and raises ValidationError listing every offending field.
Authorization and state checks stay in the services.
"""

from __future__ import annotations

from dataclasses import dataclass

from judicature_escrow.domain.collaborators import Actor  # noqa: TC001
from judicature_escrow.domain.enums import (
    DisputeOutcome,
    RefundReason,
    RequestAction,
    ReviewDecision,
    ServiceType,
    Urgency,
)
from judicature_escrow.domain.exceptions import ValidationError
from judicature_escrow.domain.policy import EscrowPolicy  # noqa: TC001

MIN_REQUEST_DESCRIPTION = 10
MAX_NOTES_LENGTH = 1000
MAX_REASON_LENGTH = 2000


def _check_amount(errors: dict[str, str], amount: int, policy: EscrowPolicy) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        errors["amount"] = "must be an integer number of minor currency units"
    elif amount < policy.min_amount:
        errors["amount"] = f"must be at least {policy.min_amount}"


def _check_currency(errors: dict[str, str], currency: str, policy: EscrowPolicy) -> None:
    if currency not in policy.supported_currencies:
        supported = ", ".join(sorted(policy.supported_currencies))
        errors["currency"] = f"must be one of: {supported}"


def _check_enum(errors: dict[str, str], name: str, value: str, enum_cls: type) -> None:
    try:
        enum_cls(value)
    except ValueError:
        errors[name] = "must be one of: " + ", ".join(m.value for m in enum_cls)


def _raise_if(errors: dict[str, str]) -> None:
    if errors:
        raise ValidationError(errors)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreateOrder:
    actor: Actor
    payer_id: str
    payee_id: str
    amount: int
    currency: str = "inr"
    description: str | None = None
    payment_request_id: str | None = None

    def validate(self, policy: EscrowPolicy) -> None:
        errors: dict[str, str] = {}
        _check_amount(errors, self.amount, policy)
        _check_currency(errors, self.currency, policy)
        if not self.payer_id:
            errors["payer_id"] = "is required"
        if not self.payee_id:
            errors["payee_id"] = "is required"
        elif self.payer_id == self.payee_id:
            errors["payee_id"] = "must differ from payer_id"
        if self.description and len(self.description) > policy.max_description_length:
            errors["description"] = f"must be at most {policy.max_description_length} characters"
        _raise_if(errors)


@dataclass(frozen=True)
class SubmitDeliverable:
    actor: Actor
    order_id: str
    file_ref: str
    file_name: str
    description: str | None = None

    def validate(self, policy: EscrowPolicy) -> None:
        errors: dict[str, str] = {}
        if not self.file_ref:
            errors["file_ref"] = "is required"
        if not self.file_name:
            errors["file_name"] = "is required"
        if self.description and len(self.description) > policy.max_description_length:
            errors["description"] = f"must be at most {policy.max_description_length} characters"
        _raise_if(errors)


@dataclass(frozen=True)
class ReviewDeliverable:
    actor: Actor
    order_id: str
    deliverable_id: str
    decision: ReviewDecision
    notes: str | None = None

    def validate(self, policy: EscrowPolicy) -> None:
        errors: dict[str, str] = {}
        _check_enum(errors, "decision", self.decision, ReviewDecision)
        if self.decision == ReviewDecision.REJECT and not (self.notes and self.notes.strip()):
            errors["notes"] = "a reason is required when rejecting a deliverable"
        if self.notes and len(self.notes) > MAX_NOTES_LENGTH:
            errors["notes"] = f"must be at most {MAX_NOTES_LENGTH} characters"
        _raise_if(errors)


@dataclass(frozen=True)
class RaiseDispute:
    actor: Actor
    order_id: str
    reason: str

    def validate(self, policy: EscrowPolicy) -> None:
        errors: dict[str, str] = {}
        if not (self.reason and self.reason.strip()):
            errors["reason"] = "is required"
        elif len(self.reason) > MAX_REASON_LENGTH:
            errors["reason"] = f"must be at most {MAX_REASON_LENGTH} characters"
        _raise_if(errors)


@dataclass(frozen=True)
class ResolveDispute:
    actor: Actor
    order_id: str
    outcome: DisputeOutcome
    notes: str | None = None

    def validate(self, policy: EscrowPolicy) -> None:
        errors: dict[str, str] = {}
        _check_enum(errors, "outcome", self.outcome, DisputeOutcome)
        if self.notes and len(self.notes) > MAX_NOTES_LENGTH:
            errors["notes"] = f"must be at most {MAX_NOTES_LENGTH} characters"
        _raise_if(errors)


@dataclass(frozen=True)
class RefundOrder:
    actor: Actor
    order_id: str
    reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER

    def validate(self, policy: EscrowPolicy) -> None:
        errors: dict[str, str] = {}
        _check_enum(errors, "reason", self.reason, RefundReason)
        _raise_if(errors)


# ---------------------------------------------------------------------------
# Payment requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreatePaymentRequest:
    actor: Actor
    counterparty_id: str
    amount: int
    service_type: ServiceType
    description: str
    currency: str = "inr"
    urgency: Urgency = Urgency.MEDIUM
    estimated_delivery_days: int = 7
    case_id: str | None = None

    def validate(self, policy: EscrowPolicy) -> None:
        errors: dict[str, str] = {}
        _check_amount(errors, self.amount, policy)
        _check_currency(errors, self.currency, policy)
        _check_enum(errors, "service_type", self.service_type, ServiceType)
        _check_enum(errors, "urgency", self.urgency, Urgency)
        length = len(self.description.strip()) if self.description else 0
        if not MIN_REQUEST_DESCRIPTION <= length <= policy.max_description_length:
            errors["description"] = (
                f"must be between {MIN_REQUEST_DESCRIPTION} and "
                f"{policy.max_description_length} characters"
            )
        if not 1 <= self.estimated_delivery_days <= 365:
            errors["estimated_delivery_days"] = "must be between 1 and 365"
        if not self.counterparty_id:
            errors["counterparty_id"] = "is required"
        elif self.counterparty_id == self.actor.user_id:
            errors["counterparty_id"] = "cannot request payment from yourself"
        _raise_if(errors)


@dataclass(frozen=True)
class RespondToRequest:
    actor: Actor
    request_id: str
    action: RequestAction
    notes: str | None = None

    def validate(self, policy: EscrowPolicy) -> None:
        errors: dict[str, str] = {}
        _check_enum(errors, "action", self.action, RequestAction)
        if self.notes and len(self.notes) > policy.max_description_length:
            errors["notes"] = f"must be at most {policy.max_description_length} characters"
        _raise_if(errors)


@dataclass(frozen=True)
class ProceedWithPayment:
    actor: Actor
    request_id: str
    payment_method_ref: str

    def validate(self, policy: EscrowPolicy) -> None:
        if not self.payment_method_ref:
            raise ValidationError({"payment_method_ref": "is required"})
