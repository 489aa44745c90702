"""Payment status transitions enforced by the capture executor."""

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"completed", "failed", "cancelled"},
    "completed": set(),
    "failed": set(),
    "cancelled": set(),
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
