# api/settlement.py
"""Trip settlement engine.

Turns a snapshot of expense records into the set of transfers that squares
everyone up. Two pure steps:

    balances = aggregate(expenses)
    transfers = match(balances)

Nothing in here fetches, stores or renders anything.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
# One minor currency unit. Anything this close to zero counts as settled.
EPSILON = CENT
ZERO = Decimal("0")

EMPTY_SHARES_POLICIES = ("credit", "self", "reject")


class SettlementError(Exception):
    """Base class for settlement engine errors."""


class InvalidExpenseError(SettlementError):
    """An expense record is structurally invalid and cannot be aggregated."""

    def __init__(self, message, expense=None):
        super().__init__(message)
        self.message = message
        self.expense = expense


def to_amount(value) -> Decimal:
    """Coerce a user supplied number into a finite Decimal."""
    if isinstance(value, bool):
        raise InvalidExpenseError(f"Not a valid amount: {value!r}")
    try:
        if isinstance(value, float):
            # str() keeps 0.1 as 0.1 instead of its binary expansion
            amount = Decimal(str(value))
        elif isinstance(value, (int, str, Decimal)):
            amount = Decimal(value.strip() if isinstance(value, str) else value)
        else:
            raise InvalidExpenseError(f"Not a valid amount: {value!r}")
    except InvalidOperation:
        raise InvalidExpenseError(f"Not a valid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidExpenseError(f"Amount must be finite, got {value!r}")
    return amount


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Share:
    user_id: str
    amount: Decimal

    def __post_init__(self):
        object.__setattr__(self, "amount", to_amount(self.amount))


@dataclass(frozen=True)
class Expense:
    """Single payment made by one member, divided among members via shares."""
    payer_id: str
    amount: Decimal
    shares: Tuple[Share, ...] = ()
    description: str = ""
    category: str = "other"

    def __post_init__(self):
        object.__setattr__(self, "amount", to_amount(self.amount))
        shares = []
        for share in self.shares or ():
            if not isinstance(share, Share):
                user_id, amount = share
                share = Share(user_id, amount)
            shares.append(share)
        object.__setattr__(self, "shares", tuple(shares))


@dataclass(frozen=True)
class Transfer:
    from_user_id: str
    to_user_id: str
    amount: Decimal


def equal_split(amount, user_ids: Iterable[str]) -> List[Share]:
    """
    Split an amount evenly in whole cents.

    Leftover cents go to the last members so the shares always add up to the
    amount exactly: 10.00 over three people is 3.33, 3.33, 3.34.
    """
    user_ids = list(user_ids)
    if not user_ids:
        raise InvalidExpenseError("Cannot split an expense between nobody")
    total = round2(to_amount(amount))
    if total < ZERO:
        raise InvalidExpenseError(f"Cannot split a negative amount: {total}")

    base = (total / len(user_ids)).quantize(CENT, rounding=ROUND_DOWN)
    leftover_cents = int((total - base * len(user_ids)) / CENT)
    first_bumped = len(user_ids) - leftover_cents

    return [
        Share(user_id, base + CENT if index >= first_bumped else base)
        for index, user_id in enumerate(user_ids)
    ]


def validate_expense(expense: Expense, tolerance: Decimal = EPSILON) -> None:
    """Raise InvalidExpenseError if the record would skew the balances."""
    if not expense.payer_id:
        raise InvalidExpenseError("Expense has no payer", expense)
    if expense.amount <= ZERO:
        raise InvalidExpenseError(
            f"Expense amount must be positive, got {expense.amount}", expense)

    seen = set()
    for share in expense.shares:
        if not share.user_id:
            raise InvalidExpenseError("Share has no user", expense)
        if share.amount < ZERO:
            raise InvalidExpenseError(
                f"Share for {share.user_id} is negative: {share.amount}", expense)
        if share.user_id in seen:
            raise InvalidExpenseError(
                f"User {share.user_id} appears twice in the same expense", expense)
        seen.add(share.user_id)

    if expense.shares:
        share_total = sum((share.amount for share in expense.shares), ZERO)
        if abs(share_total - expense.amount) > tolerance:
            raise InvalidExpenseError(
                f"Shares add up to {share_total} but the expense is {expense.amount}",
                expense)


def aggregate(
    expenses: Iterable[Expense],
    empty_shares: str = "credit",
    tolerance: Decimal = EPSILON,
) -> Dict[str, Decimal]:
    """
    Fold expenses into one net balance per participant.

    Positive means the participant is owed money, negative means they owe.
    `empty_shares` decides what an expense without shares does:
    "credit" credits the payer only, "self" treats the payer as the sole
    share-holder and "reject" raises InvalidExpenseError.
    """
    if empty_shares not in EMPTY_SHARES_POLICIES:
        raise ValueError(f"Unknown empty shares policy: {empty_shares!r}")

    balances: Dict[str, Decimal] = OrderedDict()

    for expense in expenses:
        validate_expense(expense, tolerance)

        shares = expense.shares
        if not shares:
            if empty_shares == "reject":
                raise InvalidExpenseError("Expense is not split between anyone", expense)
            if empty_shares == "self":
                shares = (Share(expense.payer_id, expense.amount),)
            else:
                logger.debug("Expense by %s has no shares, crediting payer only",
                             expense.payer_id)

        # Shares are folded in whole cents and the payer is credited what they
        # add up to, so a mismatch within tolerance never leaks into the totals
        owed = [(share.user_id, round2(share.amount)) for share in shares]
        credit = sum((amount for _, amount in owed), ZERO) if owed else round2(expense.amount)

        # 1. The payer fronted the money
        balances[expense.payer_id] = balances.get(expense.payer_id, ZERO) + credit

        # 2. Every share-holder owes their part
        for user_id, amount in owed:
            if amount == ZERO and user_id not in balances:
                continue
            balances[user_id] = balances.get(user_id, ZERO) - amount

    return balances


def match(balances: Mapping[str, Decimal]) -> List[Transfer]:
    """
    Greedily pair the largest debtor with the largest creditor until
    everyone is within EPSILON of zero.

    Equal amounts keep the order they have in `balances`.
    """
    # 1. Separate debtors and creditors
    debtors = []
    creditors = []

    for user_id, balance in balances.items():
        net = to_amount(balance)
        if net < -EPSILON:
            debtors.append({'id': user_id, 'amount': -net})
        elif net > EPSILON:
            creditors.append({'id': user_id, 'amount': net})

    debtors.sort(key=lambda x: x['amount'], reverse=True)
    creditors.sort(key=lambda x: x['amount'], reverse=True)

    # 2. Match them up
    transfers = []
    i = 0
    j = 0

    while i < len(debtors) and j < len(creditors):
        debtor = debtors[i]
        creditor = creditors[j]

        settle_amount = min(debtor['amount'], creditor['amount'])
        if settle_amount > EPSILON:
            transfers.append(Transfer(debtor['id'], creditor['id'], round2(settle_amount)))

        debtor['amount'] -= settle_amount
        creditor['amount'] -= settle_amount

        if debtor['amount'] < EPSILON: i += 1
        if creditor['amount'] < EPSILON: j += 1

    logger.debug("Matched %d debtors against %d creditors in %d transfers",
                 len(debtors), len(creditors), len(transfers))
    return transfers


def calculate_settlements(expenses: Iterable[Expense], **options) -> Tuple[Dict[str, Decimal], List[Transfer]]:
    """Run the whole pipeline. Keyword options are passed to aggregate()."""
    balances = aggregate(expenses, **options)
    return balances, match(balances)


def trip_statistics(expenses: Iterable[Expense], members: Optional[Iterable[str]] = None) -> dict:
    """Headline numbers for a trip summary."""
    expenses = list(expenses)
    total = ZERO
    participants = OrderedDict()
    by_category: Dict[str, dict] = OrderedDict()
    by_payer: Dict[str, dict] = OrderedDict()

    for expense in expenses:
        total += expense.amount
        participants[expense.payer_id] = True
        for share in expense.shares:
            participants[share.user_id] = True

        for key, bucket in ((expense.category or "other", by_category), (expense.payer_id, by_payer)):
            entry = bucket.setdefault(key, {'count': 0, 'total': ZERO})
            entry['count'] += 1
            entry['total'] += expense.amount

    member_count = len(list(members)) if members is not None else len(participants)
    average = total / member_count if member_count else ZERO

    return {
        'total_amount': round2(total),
        'total_expenses': len(expenses),
        'member_count': member_count,
        'average_per_person': round2(average),
        'by_category': {k: {'count': v['count'], 'total': round2(v['total'])} for k, v in by_category.items()},
        'by_payer': {k: {'count': v['count'], 'total': round2(v['total'])} for k, v in by_payer.items()},
    }


def describe_transfer(transfer: Transfer, names: Optional[Mapping[str, str]] = None, currency: str = "") -> str:
    names = names or {}
    debtor = names.get(transfer.from_user_id) or transfer.from_user_id
    creditor = names.get(transfer.to_user_id) or transfer.to_user_id
    amount = f"{currency} {transfer.amount:.2f}" if currency else f"${transfer.amount:.2f}"
    return f"{debtor} owes {creditor} {amount}"
