"""Checkout orchestration.

Drives one payment attempt through token -> IPN registration -> order
submission -> STK push (or hosted-page redirect), then optionally watches the
transaction status until a terminal state, cancellation, or the poll budget
runs out. Provider and transport errors are converted into `PaymentOutcome`
values; nothing from those families escapes `initiate`/`submit`/`watch`.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable
from uuid import uuid4

from pesapush.common.config import CommonSettings
from pesapush.common.errors import (
    PaymentError,
    PollingError,
    ProviderError,
    StatusLookupError,
    TransportError,
    ValidationError,
)
from pesapush.common.logging import log_context, logger
from pesapush.common.metrics import payment_attempts_total, payment_outcomes_total, status_polls_total
from pesapush.common.state_machine import validate_transition
from pesapush.services.checkout.client import PesapalClient
from pesapush.services.checkout.phone import msisdn, require_valid
from pesapush.services.checkout.schemas import (
    BillingAddress,
    OrderDraft,
    OrderEnvelope,
    OutcomeKind,
    PaymentOutcome,
    PaymentRequest,
    TransactionStatus,
    parse_transaction_status,
)

PUSH_SENT_MESSAGE = "Please check your phone for the M-PESA payment prompt"
REDIRECT_MESSAGE = "Redirecting to PesaPal to complete the payment"
AWAITING_MESSAGE = "Waiting for M-PESA confirmation..."
COMPLETED_MESSAGE = "Payment completed successfully"
DECLINED_MESSAGE = "Payment failed or was declined"
TIMED_OUT_MESSAGE = "Payment not confirmed yet. Check your M-PESA messages or try again"
CANCELLED_MESSAGE = "Stopped waiting for payment confirmation"

StatusCallback = Callable[[PaymentOutcome], None]


class PaymentAttempt:
    """In-memory record of one attempt; only the orchestrator writes to it."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        self.state = "IDLE"
        self.order_tracking_id: str | None = None
        self.timeline: list[tuple[str, str, str]] = []

    def transition(self, new_state: str, reason: str) -> None:
        validate_transition(self.state, new_state)
        self.timeline.append((self.state, new_state, reason))
        logger.info("attempt_transition from=%s to=%s reason=%s", self.state, new_state, reason)
        self.state = new_state


@dataclass
class WatchHandle:
    task: asyncio.Task
    cancel: asyncio.Event


class PaymentOrchestrator:
    """Runs payment attempts against PesaPal and watches pushed payments."""

    def __init__(self, client: PesapalClient, config: CommonSettings) -> None:
        self.client = client
        self.config = config
        self.service_name = config.service_name
        self._watches: dict[str, WatchHandle] = {}

    def new_order_id(self) -> str:
        """Time-based merchant reference, unique per submission (max 50 chars)."""

        order_id = f"{self.config.order_id_prefix}_{int(time.time() * 1000)}_{uuid4().hex[:8]}"
        return order_id[-50:]

    def draft_from_request(self, req: PaymentRequest, order_id: str, phone: str) -> OrderDraft:
        first_name, last_name = req.split_name()
        return OrderDraft(
            id=order_id,
            currency=self.config.currency,
            amount=req.amount,
            description=req.description,
            callback_url=req.callback_url,
            branch=self.config.pesapal_branch or None,
            payment_method=req.payment_method,
            phone_number=phone,
            billing_address=BillingAddress(
                email_address=req.email,
                phone_number=phone,
                country_code=self.config.country_code,
                first_name=first_name,
                last_name=last_name,
            ),
        )

    def build_envelope(self, draft: OrderDraft, order_id: str, ipn_id: str, callback_url: str) -> OrderEnvelope:
        billing = draft.billing_address.model_copy(update={"country_code": self.config.country_code})
        return OrderEnvelope(
            id=order_id,
            currency=self.config.currency,
            amount=float(draft.amount),
            description=draft.description,
            callback_url=callback_url,
            notification_id=ipn_id,
            branch=draft.branch or self.config.pesapal_branch or None,
            billing_address=billing,
        )

    def _finish(self, outcome: PaymentOutcome) -> PaymentOutcome:
        payment_outcomes_total.labels(service=self.service_name, kind=outcome.kind.value).inc()
        return outcome

    def _invalid(self, exc: ValidationError) -> PaymentOutcome:
        logger.warning("payment rejected before submission: %s", exc.message)
        return self._finish(
            PaymentOutcome(kind=OutcomeKind.INVALID, message=exc.message, state="IDLE", status_code=400)
        )

    def _failed(self, attempt: PaymentAttempt, exc: PaymentError) -> PaymentOutcome:
        step = getattr(exc, "step", "transport")
        attempt.transition("FAILED", step)
        logger.error("payment attempt failed step=%s error=%s", step, exc.message)
        return self._finish(
            PaymentOutcome(
                kind=OutcomeKind.FAILED,
                message=exc.message,
                state=attempt.state,
                order_id=attempt.order_id,
                order_tracking_id=attempt.order_tracking_id,
                status_code=getattr(exc, "status_code", None) or 500,
                details=getattr(exc, "details", None),
            )
        )

    async def initiate(self, req: PaymentRequest, on_update: StatusCallback | None = None) -> PaymentOutcome:
        """Run a full attempt with server credentials.

        When a push was sent and `on_update` is given, a detached status watch
        is started and reports through `on_update`.
        """

        payment_attempts_total.labels(service=self.service_name).inc()
        phone = ""
        if req.phone:
            try:
                phone = require_valid(req.phone)
            except ValidationError as exc:
                return self._invalid(exc)

        attempt = PaymentAttempt(self.new_order_id())
        with log_context(order_id=attempt.order_id):
            attempt.transition("TOKEN_REQUESTED", "server_credentials")
            try:
                token = (await self.client.request_token())["token"]
            except (TransportError, ProviderError) as exc:
                return self._failed(attempt, exc)

            draft = self.draft_from_request(req, attempt.order_id, phone)
            outcome = await self._submit(attempt, token, draft, self.config.pesapal_ipn_url)
            if outcome.kind == OutcomeKind.PENDING_CONFIRMATION and on_update is not None:
                self.start_watch(outcome.order_tracking_id, token, on_update=on_update, attempt=attempt)
            return outcome

    async def submit(self, token: str, draft: OrderDraft) -> PaymentOutcome:
        """Run IPN registration, order submission and push with a caller-supplied token."""

        payment_attempts_total.labels(service=self.service_name).inc()
        if draft.wants_mobile_money:
            try:
                phone = require_valid(draft.phone_number)
            except ValidationError as exc:
                return self._invalid(exc)
            draft = draft.model_copy(update={"phone_number": phone})

        attempt = PaymentAttempt(draft.id or self.new_order_id())
        with log_context(order_id=attempt.order_id):
            attempt.transition("TOKEN_REQUESTED", "token_supplied")
            return await self._submit(attempt, token, draft, draft.callback_url or self.config.pesapal_ipn_url)

    async def _submit(self, attempt: PaymentAttempt, token: str, draft: OrderDraft, ipn_url: str) -> PaymentOutcome:
        callback_url = draft.callback_url or self.config.pesapal_callback_url or ipn_url
        try:
            ipn_id = await self.client.register_ipn(token, ipn_url)
            attempt.transition("IPN_REGISTERED", "ipn_registered")

            envelope = self.build_envelope(draft, attempt.order_id, ipn_id, callback_url)
            order = await self.client.submit_order(token, envelope)
            attempt.order_tracking_id = order["order_tracking_id"]
            attempt.transition("ORDER_SUBMITTED", "order_accepted")

            if draft.wants_mobile_money:
                stk_status = await self.client.initiate_mobile_money(
                    token, attempt.order_tracking_id, msisdn(draft.phone_number)
                )
                attempt.transition("MPESA_PUSHED", "stk_push_sent")
                return self._finish(
                    PaymentOutcome(
                        kind=OutcomeKind.PENDING_CONFIRMATION,
                        message=PUSH_SENT_MESSAGE,
                        state=attempt.state,
                        order_id=attempt.order_id,
                        order_tracking_id=attempt.order_tracking_id,
                        stk_status=stk_status,
                    )
                )
        except (TransportError, ProviderError) as exc:
            return self._failed(attempt, exc)

        attempt.transition("REDIRECT_PENDING", "hosted_checkout")
        return self._finish(
            PaymentOutcome(
                kind=OutcomeKind.REDIRECT,
                message=REDIRECT_MESSAGE,
                state=attempt.state,
                order_id=attempt.order_id,
                order_tracking_id=attempt.order_tracking_id,
                redirect_url=f"{self.config.pesapal_iframe_url}?OrderTrackingId={attempt.order_tracking_id}",
            )
        )

    async def fetch_status(self, order_tracking_id: str, token: str | None = None) -> tuple[TransactionStatus, dict[str, Any]]:
        """One status lookup; requests a fresh token when none is supplied."""

        if token is None:
            token = (await self.client.request_token())["token"]
        payload = await self.client.transaction_status(token, order_tracking_id)
        return parse_transaction_status(payload), payload

    async def _poll_once(self, order_tracking_id: str, token: str) -> tuple[TransactionStatus, str]:
        """Status lookup that renews the token once when PesaPal rejects it as expired."""

        try:
            status, _ = await self.fetch_status(order_tracking_id, token)
            return status, token
        except StatusLookupError as exc:
            if exc.status_code != 401:
                raise
        logger.info("status lookup unauthorized, requesting a fresh token")
        token = (await self.client.request_token())["token"]
        status, _ = await self.fetch_status(order_tracking_id, token)
        return status, token

    def _notify(self, on_update: StatusCallback | None, outcome: PaymentOutcome) -> None:
        if on_update is None:
            return
        try:
            on_update(outcome)
        except Exception as exc:
            logger.error("status callback failed: %s", exc)

    async def watch(
        self,
        order_tracking_id: str,
        token: str,
        cancel: asyncio.Event | None = None,
        on_update: StatusCallback | None = None,
        attempt: PaymentAttempt | None = None,
    ) -> PaymentOutcome:
        """Poll status every `poll_interval_seconds` until terminal, cancelled or out of budget.

        Failed polls are logged and retried on the same interval; they count
        against `max_status_polls`.
        """

        cancel = cancel or asyncio.Event()
        with log_context(order_tracking_id=order_tracking_id):
            return await self._watch(order_tracking_id, token, cancel, on_update, attempt)

    async def _watch(
        self,
        order_tracking_id: str,
        token: str,
        cancel: asyncio.Event,
        on_update: StatusCallback | None,
        attempt: PaymentAttempt | None,
    ) -> PaymentOutcome:
        if attempt is not None:
            attempt.transition("POLLING", "watch_started")

        def outcome(kind: OutcomeKind, message: str, status: TransactionStatus | None = None) -> PaymentOutcome:
            return PaymentOutcome(
                kind=kind,
                message=message,
                state=attempt.state if attempt is not None else "POLLING",
                order_id=attempt.order_id if attempt is not None else None,
                order_tracking_id=order_tracking_id,
                transaction_status=status,
            )

        for poll in range(1, self.config.max_status_polls + 1):
            if cancel.is_set():
                break
            try:
                status, token = await self._poll_once(order_tracking_id, token)
            except (TransportError, ProviderError) as exc:
                error = PollingError(exc.message, attempt=poll)
                status_polls_total.labels(service=self.service_name, status="error").inc()
                logger.warning("status poll failed attempt=%s error=%s", error.attempt, error.message)
            else:
                status_polls_total.labels(service=self.service_name, status=status.value).inc()
                logger.info("status poll attempt=%s status=%s", poll, status.value)
                if status.is_terminal:
                    if attempt is not None:
                        attempt.transition(status.value, "provider_status")
                    if status == TransactionStatus.COMPLETED:
                        final = outcome(OutcomeKind.COMPLETED, COMPLETED_MESSAGE, status)
                    else:
                        final = outcome(OutcomeKind.FAILED, DECLINED_MESSAGE, status)
                        final.status_code = 402
                    if attempt is None:
                        final.state = status.value
                    self._notify(on_update, final)
                    return self._finish(final)
                self._notify(on_update, outcome(OutcomeKind.PENDING_CONFIRMATION, AWAITING_MESSAGE, status))

            if poll == self.config.max_status_polls:
                break
            try:
                await asyncio.wait_for(cancel.wait(), timeout=self.config.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

        if cancel.is_set():
            logger.info("status watch cancelled")
            final = outcome(OutcomeKind.CANCELLED, CANCELLED_MESSAGE)
        else:
            logger.warning("status watch gave up after %s polls", self.config.max_status_polls)
            final = outcome(OutcomeKind.TIMED_OUT, TIMED_OUT_MESSAGE)
        self._notify(on_update, final)
        return self._finish(final)

    def start_watch(
        self,
        order_tracking_id: str,
        token: str,
        on_update: StatusCallback | None = None,
        attempt: PaymentAttempt | None = None,
    ) -> WatchHandle:
        """Spawn `watch` as a detached task; one watch per tracking id."""

        existing = self._watches.get(order_tracking_id)
        if existing is not None and not existing.task.done():
            return existing
        cancel = asyncio.Event()
        task = asyncio.create_task(
            self.watch(order_tracking_id, token, cancel=cancel, on_update=on_update, attempt=attempt)
        )
        handle = WatchHandle(task=task, cancel=cancel)
        self._watches[order_tracking_id] = handle
        task.add_done_callback(lambda _: self._drop_watch(order_tracking_id, handle))
        return handle

    def _drop_watch(self, order_tracking_id: str, handle: WatchHandle) -> None:
        if self._watches.get(order_tracking_id) is handle:
            del self._watches[order_tracking_id]

    async def cancel_watch(self, order_tracking_id: str) -> PaymentOutcome | None:
        """Stop the watch for `order_tracking_id` and return its final outcome.

        Returns None when no watch is tracked for that id.
        """

        handle = self._watches.get(order_tracking_id)
        if handle is None:
            return None
        handle.cancel.set()
        return await handle.task

    def get_watch(self, order_tracking_id: str) -> WatchHandle | None:
        return self._watches.get(order_tracking_id)

    async def aclose(self) -> None:
        """Cancel every running watch and wait for them to wind down."""

        handles = list(self._watches.values())
        for handle in handles:
            handle.cancel.set()
        if handles:
            await asyncio.gather(*(handle.task for handle in handles), return_exceptions=True)
