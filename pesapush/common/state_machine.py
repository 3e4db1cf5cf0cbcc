"""Payment-attempt state machine enforced by the orchestrator."""

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "IDLE": {"TOKEN_REQUESTED", "FAILED"},
    "TOKEN_REQUESTED": {"IPN_REGISTERED", "FAILED"},
    "IPN_REGISTERED": {"ORDER_SUBMITTED", "FAILED"},
    "ORDER_SUBMITTED": {"MPESA_PUSHED", "REDIRECT_PENDING", "FAILED"},
    "MPESA_PUSHED": {"POLLING", "FAILED"},
    "POLLING": {"COMPLETED", "FAILED"},
    "REDIRECT_PENDING": set(),
    "COMPLETED": set(),
    "FAILED": set(),
}

TERMINAL_STATES = frozenset(state for state, targets in ALLOWED_TRANSITIONS.items() if not targets)


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
