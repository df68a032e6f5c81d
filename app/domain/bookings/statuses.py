PENDING = "pending"
CONFIRMED = "confirmed"
COMPLETED = "completed"
CANCELLED = "cancelled"

FULFILLMENT_STATUSES = {PENDING, CONFIRMED, COMPLETED, CANCELLED}
FULFILLMENT_TERMINAL = {COMPLETED, CANCELLED}

FULFILLMENT_TRANSITIONS = {
    PENDING: {CONFIRMED, CANCELLED},
    CONFIRMED: {COMPLETED, CANCELLED},
    COMPLETED: set(),
    CANCELLED: set(),
}

PAYMENT_PENDING = "pending"
PAID = "paid"
FAILED = "failed"
REFUNDED = "refunded"

PAYMENT_STATUSES = {PAYMENT_PENDING, PAID, FAILED, REFUNDED}
PAYMENT_TERMINAL = {FAILED, REFUNDED}

PAYMENT_TRANSITIONS = {
    PAYMENT_PENDING: {PAID, FAILED},
    PAID: {REFUNDED},
    FAILED: set(),
    REFUNDED: set(),
}

# audit trail actions
EVENT_CREATED = "created"
EVENT_CONFIRMED = "confirmed"
EVENT_PAYMENT_CONFIRMED = "payment_confirmed"
EVENT_PAYMENT_FAILED = "payment_failed"
EVENT_REFUNDED = "refunded"
EVENT_CANCELLED = "cancelled"
EVENT_COMPLETED = "completed"
EVENT_NOTES_UPDATED = "notes_updated"
EVENT_PAYMENT_AFTER_CANCELLATION = "payment_after_cancellation"
EVENT_PAYMENT_UNVERIFIED = "payment_unverified"


def can_transition(current: str, target: str) -> bool:
    return target in FULFILLMENT_TRANSITIONS.get(current, set())


def can_transition_payment(current: str, target: str) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, set())


def normalize_fulfillment_status(value: str) -> str:
    lower = value.lower()
    if lower not in FULFILLMENT_STATUSES:
        raise ValueError("Invalid booking status")
    return lower


def normalize_payment_status(value: str) -> str:
    lower = value.lower()
    if lower not in PAYMENT_STATUSES:
        raise ValueError("Invalid payment status")
    return lower
