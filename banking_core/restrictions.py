"""
Restriction Evaluator

Decides whether an amount on an account needs pattern authorization. The
evaluation is a pure function of (restrictions, amount), so the validate-only
path and the execution path always agree.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from .accounts import Restriction


@dataclass(frozen=True)
class RestrictionVerdict:
    requires_auth: bool
    matched_restriction: Optional[Restriction] = None

    @property
    def required_pattern(self) -> Optional[str]:
        if self.matched_restriction is None:
            return None
        return self.matched_restriction.pattern_ref

    def to_dict(self):
        return {
            "requires_auth": self.requires_auth,
            "matched_restriction": self.matched_restriction.to_dict() if self.matched_restriction else None,
            "required_pattern": self.required_pattern
        }


NO_RESTRICTION = RestrictionVerdict(requires_auth=False)


class RestrictionEvaluator:
    """Matches an amount against an account's restriction bands"""

    def evaluate(self, restrictions: Iterable[Restriction], amount: Decimal) -> RestrictionVerdict:
        """
        Return the verdict for the first band with from <= amount <= to.
        No matching band means no authentication is required.
        """
        for restriction in restrictions:
            if restriction.contains(amount):
                return RestrictionVerdict(requires_auth=True, matched_restriction=restriction)
        return NO_RESTRICTION
