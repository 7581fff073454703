"""
API Dependencies

Wires the engines over a repository and exposes them to route handlers via
``request.app.state.container``.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from src.checkout.numbering import OrderNumberGenerator
from src.checkout.orchestrator import CheckoutOrchestrator
from src.common.retry import RetryPolicy
from src.config import Settings
from src.events.publisher import EventPublisher
from src.inventory.commit import InventoryCommitter
from src.inventory.expiry import ReservationSweeper
from src.inventory.reservation import ReservationEngine
from src.payments.reconciliation import CommitReconciler
from src.payments.signatures import RazorpaySignatureVerifier, StripeSignatureVerifier
from src.payments.webhooks import WebhookIdempotencyGate
from src.storage.base import Repository, WebhookEventStore


@dataclass
class ServiceContainer:
    """Everything a request handler or background job needs."""
    settings: Settings
    repository: Repository
    publisher: EventPublisher
    events: WebhookEventStore
    reservations: ReservationEngine
    committer: InventoryCommitter
    checkout: CheckoutOrchestrator
    webhooks: WebhookIdempotencyGate
    sweeper: ReservationSweeper
    reconciler: CommitReconciler


def build_container(
    settings: Settings,
    repository: Repository,
    publisher: EventPublisher,
    events: Optional[WebhookEventStore] = None,
    policy: Optional[RetryPolicy] = None,
) -> ServiceContainer:
    """
    Build the engines for one repository.

    Args:
        settings: Application settings
        repository: Storage backend implementing every port
        publisher: Outbound event channel
        events: Dedup store override (defaults to the repository)
        policy: Retry budget override (defaults to reservation settings)
    """
    policy = policy or RetryPolicy.from_settings(settings.reservation)
    events = events or repository
    reservation = settings.reservation
    checkout_cfg = settings.checkout
    webhook_cfg = settings.webhooks

    committer = InventoryCommitter(
        repository,
        repository,
        publisher,
        policy,
        low_stock_threshold=reservation.low_stock_threshold,
    )
    numbers = OrderNumberGenerator(
        repository,
        prefix=checkout_cfg.order_number_prefix,
        digits=checkout_cfg.order_number_digits,
        start=checkout_cfg.order_number_start,
    )
    verifiers = {
        "stripe": StripeSignatureVerifier(
            webhook_cfg.stripe_secret.get_secret_value(),
            tolerance_seconds=webhook_cfg.signature_tolerance_seconds,
        ),
        "razorpay": RazorpaySignatureVerifier(webhook_cfg.razorpay_secret.get_secret_value()),
    }

    return ServiceContainer(
        settings=settings,
        repository=repository,
        publisher=publisher,
        events=events,
        reservations=ReservationEngine(
            repository,
            repository,
            repository,
            cart_ttl=timedelta(minutes=reservation.cart_ttl_minutes),
            policy=policy,
        ),
        committer=committer,
        checkout=CheckoutOrchestrator(
            repository,
            repository,
            repository,
            committer,
            publisher,
            numbers,
            policy,
            payment_methods=checkout_cfg.payment_methods,
            deferred_methods=checkout_cfg.deferred_payment_methods,
            max_number_attempts=checkout_cfg.max_number_attempts,
            currency=checkout_cfg.currency,
        ),
        webhooks=WebhookIdempotencyGate(
            verifiers,
            events,
            repository,
            committer,
            publisher,
            policy,
            dedup_ttl=timedelta(hours=webhook_cfg.dedup_ttl_hours),
        ),
        sweeper=ReservationSweeper(
            repository,
            repository,
            committer,
            order_ttl=timedelta(minutes=reservation.order_ttl_minutes),
            exempt_methods=checkout_cfg.deferred_payment_methods,
            batch_size=reservation.sweep_batch_size,
        ),
        reconciler=CommitReconciler(repository, committer, batch_size=reservation.sweep_batch_size),
    )


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return container


async def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity as set by the authentication gateway."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id


async def require_admin(
    user_id: str = Depends(get_current_user),
    x_user_role: Optional[str] = Header(default=None),
) -> str:
    if (x_user_role or "").lower() != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return user_id
