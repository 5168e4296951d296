"""
Business-rule failures raised by the ledger service.

Each failure is its own type with a stable ``code`` so callers can branch on
the kind of failure without parsing messages. They subclass ``ValueError``
because every one of them describes a request the ledger refuses to apply,
and the HTTP layer maps them to 400 responses (409 for a reused
idempotency key).
"""


class InvalidAmount(ValueError):
    code = "invalid_amount"

    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"Point amount must be a positive integer, got {amount!r}.")


class InsufficientBalance(ValueError):
    code = "insufficient_balance"

    def __init__(self, balance: int, amount: int):
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Insufficient points: balance={balance} requested={amount}."
        )


class SelfTransfer(ValueError):
    code = "self_transfer"

    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__("Points cannot be transferred to the same user.")


class IdempotencyConflict(ValueError):
    code = "idempotency_conflict"

    def __init__(self, idempotency_key):
        self.idempotency_key = idempotency_key
        super().__init__(
            "Idempotency-Key was already used for a different transfer."
        )
