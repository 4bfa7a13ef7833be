"""
Balance computation for groups.

Everything here is a pure function over Decimal amounts so the in-memory and
SQL stores share one implementation. Sign conventions:

  * a group balance is positive when the member is owed money and negative
    when the member owes money;
  * a pairwise balance ``pairs[(a, b)]`` is positive when ``a`` owes ``b``.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Protocol, Sequence

from fairshare.errors import InvalidRequestError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Balances smaller than this are treated as settled.
SETTLED_TOLERANCE = Decimal("0.009")
# Largest amount a NUMERIC(12, 2) column can hold.
MAX_AMOUNT = Decimal("9999999999.99")


class ParticipantLike(Protocol):
    user_id: int
    amount_owed: Decimal


class ExpenseLike(Protocol):
    paid_by: int
    participants: Sequence[ParticipantLike]


class PaymentLike(Protocol):
    paid_by: int
    paid_to: int
    amount: Decimal


@dataclass(frozen=True)
class Settlement:
    from_user_id: int
    to_user_id: int
    amount: Decimal

    def as_dict(self) -> dict:
        return {
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "amount": self.amount,
        }


@dataclass
class UserTotals:
    total_owed: Decimal = ZERO
    total_owes: Decimal = ZERO
    owed_by: list[tuple[int, Decimal]] = field(default_factory=list)
    owes_to: list[tuple[int, Decimal]] = field(default_factory=list)

    @property
    def net_balance(self) -> Decimal:
        return self.total_owed - self.total_owes


def to_money(value: Any) -> Decimal:
    """Convert an int/float/str/Decimal to a Decimal rounded to cents."""
    if isinstance(value, bool):
        raise InvalidRequestError(f"Invalid amount: {value!r}")
    try:
        if isinstance(value, float):
            value = str(value)
        amount = Decimal(value)
        if not amount.is_finite():
            raise InvalidRequestError(f"Invalid amount: {value!r}")
        amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidRequestError(f"Invalid amount: {value!r}")
    if abs(amount) > MAX_AMOUNT:
        raise InvalidRequestError(f"Amount exceeds the maximum of {MAX_AMOUNT}")
    return amount


def is_settled(amount: Decimal) -> bool:
    return abs(amount) <= SETTLED_TOLERANCE


def split_equally(total: Any, user_ids: Sequence[int]) -> list[tuple[int, Decimal]]:
    """
    Split ``total`` into cent-exact shares.

    Leftover cents are handed out one at a time starting from the first user,
    so the shares always add back up to ``total``.
    """
    if not user_ids:
        raise InvalidRequestError("At least one participant is required")
    if len(set(user_ids)) != len(user_ids):
        raise InvalidRequestError("Participants must be unique")
    total = to_money(total)
    if total < ZERO:
        raise InvalidRequestError("Cannot split a negative amount")
    count = len(user_ids)
    base = (total / count).quantize(CENT, rounding=ROUND_DOWN)
    remainder_cents = int((total - base * count) / CENT)
    shares = []
    for index, user_id in enumerate(user_ids):
        share = base + (CENT if index < remainder_cents else ZERO)
        shares.append((user_id, share))
    return shares


def validate_payment_amount(amount: Any) -> Decimal:
    """Round a payment amount to cents; it must still be positive afterwards."""
    amount = to_money(amount)
    if amount <= ZERO:
        raise InvalidRequestError("Payment amount must be at least 0.01")
    return amount


def validate_participants(
    total: Any, participants: Sequence[tuple[int, Decimal]]
) -> None:
    total = to_money(total)
    if total <= ZERO:
        raise InvalidRequestError("Expense total must be greater than zero")
    if not participants:
        raise InvalidRequestError("At least one participant is required")
    user_ids = [user_id for user_id, _ in participants]
    if len(set(user_ids)) != len(user_ids):
        raise InvalidRequestError("Participants must be unique")
    owed_sum = ZERO
    for user_id, amount in participants:
        amount = to_money(amount)
        if amount < ZERO:
            raise InvalidRequestError(
                f"Participant {user_id} has a negative share"
            )
        owed_sum += amount
    if abs(owed_sum - total) > CENT:
        raise InvalidRequestError(
            f"Participant shares ({owed_sum}) do not add up to the total ({total})"
        )


def expense_balance_changes(
    paid_by: int, participants: Iterable[ParticipantLike]
) -> dict[int, Decimal]:
    changes: dict[int, Decimal] = defaultdict(lambda: ZERO)
    changes[paid_by] += ZERO
    for participant in participants:
        if participant.user_id == paid_by:
            continue
        changes[participant.user_id] -= participant.amount_owed
        changes[paid_by] += participant.amount_owed
    return dict(changes)


def payment_balance_changes(
    paid_by: int, paid_to: int, amount: Decimal
) -> dict[int, Decimal]:
    if paid_by == paid_to:
        return {paid_by: ZERO}
    return {paid_by: amount, paid_to: -amount}


def compute_group_balances(
    member_ids: Iterable[int],
    expenses: Iterable[ExpenseLike],
    payments: Iterable[PaymentLike],
) -> dict[int, Decimal]:
    balances: dict[int, Decimal] = {user_id: ZERO for user_id in member_ids}
    for expense in expenses:
        for user_id, change in expense_balance_changes(
            expense.paid_by, expense.participants
        ).items():
            balances[user_id] = balances.get(user_id, ZERO) + change
    for payment in payments:
        for user_id, change in payment_balance_changes(
            payment.paid_by, payment.paid_to, payment.amount
        ).items():
            balances[user_id] = balances.get(user_id, ZERO) + change
    return {
        user_id: amount.quantize(CENT, rounding=ROUND_HALF_UP)
        for user_id, amount in balances.items()
    }


def compute_pairwise_balances(
    member_ids: Iterable[int],
    expenses: Iterable[ExpenseLike],
    payments: Iterable[PaymentLike],
) -> dict[tuple[int, int], Decimal]:
    """Return the amount every user directly owes every other user."""
    users: set[int] = set(member_ids)
    pairs: dict[tuple[int, int], Decimal] = defaultdict(lambda: ZERO)

    for expense in expenses:
        users.add(expense.paid_by)
        for participant in expense.participants:
            users.add(participant.user_id)
            if participant.user_id == expense.paid_by:
                continue
            pairs[(participant.user_id, expense.paid_by)] += participant.amount_owed
            pairs[(expense.paid_by, participant.user_id)] -= participant.amount_owed

    for payment in payments:
        users.update((payment.paid_by, payment.paid_to))
        if payment.paid_by == payment.paid_to:
            continue
        pairs[(payment.paid_by, payment.paid_to)] -= payment.amount
        pairs[(payment.paid_to, payment.paid_by)] += payment.amount

    ordered = sorted(users)
    return {
        (a, b): pairs[(a, b)].quantize(CENT, rounding=ROUND_HALF_UP)
        for a in ordered
        for b in ordered
        if a != b
    }


def simplify_debts(balances: dict[int, Decimal]) -> list[Settlement]:
    """
    Suggest transfers that settle every balance.

    Greedily pays the largest creditor from the largest debtor, which needs
    at most ``n - 1`` transfers.
    """
    debtors = [
        [user_id, -amount] for user_id, amount in balances.items() if amount < -SETTLED_TOLERANCE
    ]
    creditors = [
        [user_id, amount] for user_id, amount in balances.items() if amount > SETTLED_TOLERANCE
    ]
    debtors.sort(key=lambda item: (-item[1], item[0]))
    creditors.sort(key=lambda item: (-item[1], item[0]))

    settlements: list[Settlement] = []
    i = j = 0
    while i < len(debtors) and j < len(creditors):
        debtor, creditor = debtors[i], creditors[j]
        amount = min(debtor[1], creditor[1])
        if amount >= CENT:
            settlements.append(
                Settlement(from_user_id=debtor[0], to_user_id=creditor[0], amount=amount)
            )
        debtor[1] -= amount
        creditor[1] -= amount
        if debtor[1] <= SETTLED_TOLERANCE:
            i += 1
        if creditor[1] <= SETTLED_TOLERANCE:
            j += 1
    return settlements


def summarize_user_totals(pairs: Iterable[tuple[int, Decimal]]) -> UserTotals:
    """
    Aggregate ``(other_user_id, amount)`` rows for one user, where a positive
    amount means the user owes ``other_user_id``. Rows for the same
    counterpart (for example from different groups) are netted first.
    """
    netted: dict[int, Decimal] = defaultdict(lambda: ZERO)
    for other_user_id, amount in pairs:
        netted[other_user_id] += amount

    totals = UserTotals()
    for other_user_id in sorted(netted):
        amount = netted[other_user_id]
        if is_settled(amount):
            continue
        if amount > ZERO:
            totals.total_owes += amount
            totals.owes_to.append((other_user_id, amount))
        else:
            totals.total_owed += -amount
            totals.owed_by.append((other_user_id, -amount))
    return totals
