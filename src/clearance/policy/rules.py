"""
Per-action decision rules.

Each decision action carries its own note length floor, required payload
fields, blocked risk levels and secondary approval threshold.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from clearance.exceptions import ConfigurationError
from clearance.models.workflow import DecisionAction, RiskLevel


class ActionRule(BaseModel):
    """Validation rule for one decision action."""

    model_config = ConfigDict(frozen=True)

    min_notes_length: int = Field(..., ge=0)
    required_fields: tuple[str, ...] = ()
    blocked_risk_levels: frozenset[RiskLevel] = frozenset()
    secondary_approval_threshold: Optional[Decimal] = Field(
        None, description="None means no amount-based secondary approval"
    )
    requires_compliance_check: bool = False
    requires_risk_assessment: bool = False
    checks_amount_authority: bool = False

    def blocks(self, risk: RiskLevel) -> bool:
        return risk in self.blocked_risk_levels

    def exceeds_threshold(self, amount: Decimal) -> bool:
        return (
            self.secondary_approval_threshold is not None
            and amount > self.secondary_approval_threshold
        )


class ActionRuleTable:
    """Lookup of ActionRule by action."""

    def __init__(self, rules: dict[DecisionAction, ActionRule]):
        missing = [a.value for a in DecisionAction if a not in rules]
        if missing:
            raise ConfigurationError(f"No decision rule configured for actions: {missing}")
        self._rules = dict(rules)

    def rule_for(self, action: DecisionAction) -> ActionRule:
        try:
            return self._rules[DecisionAction(action)]
        except (KeyError, ValueError):
            raise ConfigurationError(f"Unknown decision action: {action}") from None

    def items(self):
        return self._rules.items()
