"""
Provider Event Parsing

Maps a verified provider payload onto the three outcomes the service acts on
(payment succeeded, payment failed, refunded). Everything else is
acknowledged and ignored.

Dedup keys:
- Stripe: the event id (evt_...)
- Razorpay: "<entity id>:<event type>". One payment emits several events
  (payment.authorized, then payment.captured) under the same pay_... id.
  Refund events, which carry no payment entity, use the refund id.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class PaymentEventKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentEvent:
    provider: str
    event_id: str
    event_type: str
    kind: PaymentEventKind
    order_id: Optional[str] = None
    payment_reference: Optional[str] = None


def _order_ref(bag: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(bag, dict):
        return None
    value = bag.get("orderId") or bag.get("order_id")
    return str(value) if value else None


def _require_str(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(f"missing {field}")
    return value


STRIPE_KINDS = {
    "payment_intent.succeeded": PaymentEventKind.SUCCEEDED,
    "payment_intent.payment_failed": PaymentEventKind.FAILED,
    "payment_intent.canceled": PaymentEventKind.FAILED,
    "charge.refunded": PaymentEventKind.REFUNDED,
}

RAZORPAY_KINDS = {
    "payment.captured": PaymentEventKind.SUCCEEDED,
    "order.paid": PaymentEventKind.SUCCEEDED,
    "payment.failed": PaymentEventKind.FAILED,
    "refund.processed": PaymentEventKind.REFUNDED,
}


def parse_stripe(payload: Dict[str, Any]) -> PaymentEvent:
    """
    Raises:
        ValueError, KeyError, TypeError: payload is not a Stripe event
    """
    event_id = _require_str(payload["id"], "id")
    event_type = _require_str(payload["type"], "type")
    obj = payload["data"]["object"]
    if not isinstance(obj, dict):
        raise TypeError("data.object must be an object")

    kind = STRIPE_KINDS.get(event_type, PaymentEventKind.IGNORED)
    if event_type == "charge.refunded":
        reference = obj.get("payment_intent") or obj.get("id")
    else:
        reference = obj.get("id")
    return PaymentEvent(
        provider="stripe",
        event_id=event_id,
        event_type=event_type,
        kind=kind,
        order_id=_order_ref(obj.get("metadata")),
        payment_reference=reference,
    )


def parse_razorpay(payload: Dict[str, Any]) -> PaymentEvent:
    """
    Raises:
        ValueError, KeyError, TypeError: payload is not a Razorpay event
    """
    event_type = _require_str(payload["event"], "event")
    body = payload["payload"]
    if not isinstance(body, dict):
        raise TypeError("payload must be an object")

    payment = (body.get("payment") or {}).get("entity")
    refund = (body.get("refund") or {}).get("entity")
    if isinstance(payment, dict) and payment.get("id"):
        entity = payment
        entity_id = _require_str(payment["id"], "payment.entity.id")
        reference = entity_id
    elif isinstance(refund, dict) and refund.get("id"):
        entity = refund
        entity_id = _require_str(refund["id"], "refund.entity.id")
        reference = refund.get("payment_id") or entity_id
    else:
        raise ValueError("no payment or refund entity")

    return PaymentEvent(
        provider="razorpay",
        event_id=f"{entity_id}:{event_type}",
        event_type=event_type,
        kind=RAZORPAY_KINDS.get(event_type, PaymentEventKind.IGNORED),
        order_id=_order_ref(entity.get("notes")),
        payment_reference=reference,
    )


PARSERS = {
    "stripe": parse_stripe,
    "razorpay": parse_razorpay,
}
