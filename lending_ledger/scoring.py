"""
Credit Scoring Contract

The ledger does not score applicants itself. A CreditScorer collaborator
returns a numeric score (0-1000) and a recommended rate; this module holds
the contract plus the pricing and approval rules applied to a score.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from .currency import Money

MIN_SCORE = 0
MAX_SCORE = 1000
MIN_APPROVAL_SCORE = 600

# (minimum score, base rate), highest tier first
RATE_TIERS = [
    (800, Decimal('0.10')),
    (700, Decimal('0.12')),
    (600, Decimal('0.15')),
]
SUBPRIME_RATE = Decimal('0.20')


@dataclass(frozen=True)
class CreditAssessment:
    """Score and pricing returned by a CreditScorer"""
    score: int
    rate: Decimal
    recommend_approval: bool = True
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            'score': self.score,
            'rate': str(self.rate),
            'recommend_approval': self.recommend_approval,
            'reason': self.reason
        }


def recommended_rate(score: int, amount: Money, term: int) -> Decimal:
    """
    Price a loan from its score, then adjust for size and length

    Large loans (> 500,000) pay 2 points more, small ones (< 50,000) one
    point less; terms longer than 24 months add a point.
    """
    rate = SUBPRIME_RATE
    for threshold, tier_rate in RATE_TIERS:
        if score >= threshold:
            rate = tier_rate
            break

    if amount.amount > Decimal('500000'):
        rate += Decimal('0.02')
    if amount.amount < Decimal('50000'):
        rate -= Decimal('0.01')
    if term > 24:
        rate += Decimal('0.01')
    return rate


def approval_recommendation(score: int, amount: Money, term: int) -> CreditAssessment:
    """Apply the approval policy to a score"""
    rate = recommended_rate(score, amount, term)

    if score < MIN_APPROVAL_SCORE:
        reason = f"Credit score too low. Minimum required: {MIN_APPROVAL_SCORE}"
    elif amount.amount > Decimal('500000') and score < 750:
        reason = "High loan amount requires higher credit score"
    elif term > 24 and score < 700:
        reason = "Long-term loans require higher credit score"
    else:
        return CreditAssessment(score=score, rate=rate, recommend_approval=True,
                                reason="Loan application meets approval criteria")

    return CreditAssessment(score=score, rate=rate, recommend_approval=False, reason=reason)


class CreditScorer(ABC):
    """External credit scoring collaborator"""

    @abstractmethod
    def assess(self, user_id: str, amount: Money, term: int) -> CreditAssessment:
        """Score an applicant for a loan of ``amount`` over ``term`` months"""
        pass


class FixedScoreCreditScorer(CreditScorer):
    """
    Scorer that returns a configured score per user (or a default) and
    prices it with the standard rate tiers. Used for wiring and tests.
    """

    def __init__(self, default_score: int = 650, scores: Optional[Dict[str, int]] = None):
        self.default_score = default_score
        self.scores = dict(scores or {})

    def assess(self, user_id: str, amount: Money, term: int) -> CreditAssessment:
        score = max(MIN_SCORE, min(MAX_SCORE, self.scores.get(user_id, self.default_score)))
        return approval_recommendation(score, amount, term)
