"""Run one M-PESA checkout from the terminal and follow it to a terminal state.

Reads PesaPal credentials from the environment / `.env` like the gateway.
Ctrl-C stops waiting for confirmation (the payment itself is not cancelled).
"""

import argparse
import asyncio
from decimal import Decimal, InvalidOperation

from pesapush.common.config import CommonSettings
from pesapush.common.logging import configure_logging
from pesapush.services.checkout.client import PesapalClient
from pesapush.services.checkout.schemas import MPESA, OutcomeKind, PaymentOutcome, PaymentRequest
from pesapush.services.checkout.service import PaymentOrchestrator

EXIT_CODES = {
    OutcomeKind.COMPLETED: 0,
    OutcomeKind.REDIRECT: 0,
    OutcomeKind.FAILED: 1,
    OutcomeKind.INVALID: 1,
    OutcomeKind.TIMED_OUT: 2,
    OutcomeKind.CANCELLED: 2,
}


def print_status(outcome: PaymentOutcome) -> None:
    print(f"[{outcome.kind.value}] {outcome.message}")


def positive_amount(raw: str) -> Decimal:
    """argparse type for `--amount`: a finite decimal greater than zero."""

    try:
        amount = Decimal(raw)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid amount: {raw!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise argparse.ArgumentTypeError(f"amount must be a positive number, got {raw!r}")
    return amount


async def run(args: argparse.Namespace) -> int:
    """Initiate, then watch a pushed payment until it settles."""

    config = CommonSettings()
    if args.max_polls is not None:
        config = config.model_copy(update={"max_status_polls": args.max_polls})
    service = PaymentOrchestrator(PesapalClient.from_settings(config), config)
    request = PaymentRequest(
        amount=args.amount,
        description=args.description,
        email=args.email,
        phone=args.phone,
        name=args.name,
        payment_method=args.method,
    )

    outcome = await service.initiate(request, on_update=print_status)
    print_status(outcome)
    if outcome.kind == OutcomeKind.REDIRECT:
        print(f"Open {outcome.redirect_url} to finish the payment.")
    if outcome.kind != OutcomeKind.PENDING_CONFIRMATION:
        return EXIT_CODES.get(outcome.kind, 1)

    watch = service.get_watch(outcome.order_tracking_id)
    if watch is None:
        return 2
    try:
        final = await asyncio.shield(watch.task)
    except asyncio.CancelledError:
        final = await service.cancel_watch(outcome.order_tracking_id)
        if final is None:
            return 2
    return EXIT_CODES.get(final.kind, 1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Initiate an M-PESA payment through PesaPal.")
    parser.add_argument("--amount", required=True, type=positive_amount, help="amount in KES, e.g. 150 or 99.50")
    parser.add_argument("--phone", required=True, help="e.g. 0712345678 or +254712345678")
    parser.add_argument("--email", default="customer@example.com")
    parser.add_argument("--name", default="")
    parser.add_argument("--description", default="Payment")
    parser.add_argument("--method", default=MPESA, help="MPESA for STK push; anything else redirects")
    parser.add_argument("--max-polls", type=int, default=None)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse CLI args and run one payment attempt."""

    args = build_parser().parse_args(argv)

    configure_logging()
    try:
        raise SystemExit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        print("Stopped waiting for payment confirmation.")
        raise SystemExit(2) from None


if __name__ == "__main__":
    main()
