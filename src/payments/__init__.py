"""
Payments Module

Webhook verification, idempotent finalization and commit reconciliation.
"""
from .signatures import SignatureVerifier, StripeSignatureVerifier, RazorpaySignatureVerifier
from .parsers import PaymentEvent, PaymentEventKind, parse_razorpay, parse_stripe
from .webhooks import WebhookIdempotencyGate, WebhookOutcome, WebhookState
from .reconciliation import CommitReconciler, ReconciliationReport

__all__ = [
    "SignatureVerifier",
    "StripeSignatureVerifier",
    "RazorpaySignatureVerifier",
    "PaymentEvent",
    "PaymentEventKind",
    "parse_razorpay",
    "parse_stripe",
    "WebhookIdempotencyGate",
    "WebhookOutcome",
    "WebhookState",
    "CommitReconciler",
    "ReconciliationReport",
]
