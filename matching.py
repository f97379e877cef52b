"""
Transaction to payment matching heuristics.

Pure functions over plain candidate records; the database scan lives in
``services.MatchingService``. The weighting of the individual signals is
tunable through settings, the tier thresholds are fixed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Iterable, Optional, Sequence

from rapidfuzz import fuzz
from rapidfuzz.utils import default_process

EXACT_AMOUNT_THRESHOLD = 0.9
CLOSE_AMOUNT_THRESHOLD = 0.7
MERCHANT_MATCH_THRESHOLD = 0.5

# Best score a non-identical amount can reach; keeps exact matches on top.
CLOSE_AMOUNT_CEILING = 0.8

_NOISE = re.compile(r"(\s+#?\d{4,}|\*+|\s+(web|ppd) id:\s*\d+)", re.IGNORECASE)


class MatchType(str, Enum):
    exact_amount = "exact_amount"
    close_amount = "close_amount"
    merchant_match = "merchant_match"
    date_range = "date_range"


@dataclass(frozen=True)
class TransactionCandidate:
    id: int
    amount_cents: int
    date: date
    merchant_name: Optional[str]
    description: str = ""


@dataclass(frozen=True)
class PaymentCandidate:
    id: int
    payee: str
    amount_cents: int
    due_date: date


@dataclass(frozen=True)
class ScoreWeights:
    amount: float = 0.55
    merchant: float = 0.25
    date: float = 0.20


@dataclass(frozen=True)
class MatchProposal:
    transaction_id: int
    payment_id: int
    confidence: float

    @property
    def match_type(self) -> MatchType:
        return match_type_for(self.confidence)


def match_type_for(confidence: float) -> MatchType:
    if confidence >= EXACT_AMOUNT_THRESHOLD:
        return MatchType.exact_amount
    if confidence >= CLOSE_AMOUNT_THRESHOLD:
        return MatchType.close_amount
    if confidence >= MERCHANT_MATCH_THRESHOLD:
        return MatchType.merchant_match
    return MatchType.date_range


def normalize_merchant(value: Optional[str]) -> str:
    if not value:
        return ""
    cleaned = _NOISE.sub(" ", value)
    return " ".join(default_process(cleaned).split())


def amount_score(txn_cents: int, payment_cents: int, cutoff: float) -> Optional[float]:
    """
    Score amount agreement on absolute values.

    Returns None when the relative difference exceeds ``cutoff``; the pair is
    then not a candidate at all.
    """
    txn_abs = abs(txn_cents)
    payment_abs = abs(payment_cents)
    if txn_abs == payment_abs:
        return 1.0
    if payment_abs == 0:
        return None
    relative = abs(txn_abs - payment_abs) / payment_abs
    if relative > cutoff:
        return None
    return CLOSE_AMOUNT_CEILING * (1.0 - relative / cutoff)


def merchant_score(merchant: Optional[str], payee: Optional[str]) -> float:
    left = normalize_merchant(merchant)
    right = normalize_merchant(payee)
    if not left or not right:
        return 0.0
    if left in right or right in left:
        return 1.0
    return fuzz.token_set_ratio(left, right) / 100.0


def date_score(txn_date: date, due_date: date, window_days: int) -> float:
    if window_days <= 0:
        return 1.0 if txn_date == due_date else 0.0
    days = abs((txn_date - due_date).days)
    return max(0.0, 1.0 - days / window_days)


def score_pair(
    txn: TransactionCandidate,
    payment: PaymentCandidate,
    *,
    weights: ScoreWeights,
    amount_cutoff: float,
    date_window_days: int,
) -> Optional[float]:
    amount = amount_score(txn.amount_cents, payment.amount_cents, amount_cutoff)
    if amount is None:
        return None
    merchant = merchant_score(txn.merchant_name or txn.description, payment.payee)
    on_date = date_score(txn.date, payment.due_date, date_window_days)
    confidence = (
        weights.amount * amount + weights.merchant * merchant + weights.date * on_date
    )
    return round(min(1.0, max(0.0, confidence)), 4)


def assign_one_to_one(
    scored: Iterable[tuple[TransactionCandidate, PaymentCandidate, float]],
) -> list[MatchProposal]:
    """
    Greedy stable assignment: best pairs first, each side claimed once.
    """
    ordered = sorted(
        scored,
        key=lambda item: (
            -item[2],
            item[0].date,
            item[0].id,
            item[1].due_date,
            item[1].id,
        ),
    )
    claimed_txns: set[int] = set()
    claimed_payments: set[int] = set()
    accepted: list[MatchProposal] = []
    for txn, payment, confidence in ordered:
        if txn.id in claimed_txns or payment.id in claimed_payments:
            continue
        claimed_txns.add(txn.id)
        claimed_payments.add(payment.id)
        accepted.append(
            MatchProposal(
                transaction_id=txn.id, payment_id=payment.id, confidence=confidence
            )
        )
    return accepted


def propose_matches(
    transactions: Sequence[TransactionCandidate],
    payments: Sequence[PaymentCandidate],
    *,
    weights: ScoreWeights,
    amount_cutoff: float,
    date_window_days: int,
    min_confidence: float = 0.0,
) -> list[MatchProposal]:
    scored: list[tuple[TransactionCandidate, PaymentCandidate, float]] = []
    for txn in transactions:
        for payment in payments:
            confidence = score_pair(
                txn,
                payment,
                weights=weights,
                amount_cutoff=amount_cutoff,
                date_window_days=date_window_days,
            )
            if confidence is None or confidence < min_confidence:
                continue
            scored.append((txn, payment, confidence))
    return assign_one_to_one(scored)
