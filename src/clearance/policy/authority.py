"""
Authority levels for withdrawal approvals.

Maps each review stage to the role that owns it and the amount that role
may approve on its own. A role may act at its own stage or any stage
below it.
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clearance.exceptions import ConfigurationError
from clearance.models.workflow import WorkflowStage
from clearance.security.auth import UserRole


class AuthorityLevel(BaseModel):
    """One row of the authority table."""

    model_config = ConfigDict(frozen=True)

    level: int = Field(..., ge=1)
    stage: WorkflowStage
    role: UserRole
    max_amount: Optional[Decimal] = Field(None, description="None means unlimited")
    requires_escalation: bool = False
    can_override: bool = False
    timeout_hours: float = Field(..., gt=0)

    @field_validator("stage")
    @classmethod
    def validate_stage(cls, v: WorkflowStage) -> WorkflowStage:
        if v == WorkflowStage.COMPLETED:
            raise ValueError("completed is not a review stage")
        return v

    def allows(self, amount: Decimal) -> bool:
        return self.max_amount is None or amount <= self.max_amount


class AuthorityPolicy:
    """
    Lookup over the authority table.

    Every method raises ConfigurationError for a stage or role the table
    does not know.
    """

    def __init__(self, levels: list[AuthorityLevel]):
        if not levels:
            raise ConfigurationError("Authority table is empty")

        self._levels = sorted(levels, key=lambda lvl: lvl.level)
        self._by_stage: dict[WorkflowStage, AuthorityLevel] = {}
        self._by_role: dict[UserRole, AuthorityLevel] = {}

        for lvl in self._levels:
            if lvl.stage in self._by_stage:
                raise ConfigurationError(f"Duplicate authority level for stage {lvl.stage.value}")
            if lvl.role in self._by_role:
                raise ConfigurationError(f"Duplicate authority level for role {lvl.role.value}")
            self._by_stage[lvl.stage] = lvl
            self._by_role[lvl.role] = lvl

        missing = [
            s.value for s in WorkflowStage
            if s != WorkflowStage.COMPLETED and s not in self._by_stage
        ]
        if missing:
            raise ConfigurationError(f"Authority table has no level for stages: {missing}")

    @property
    def levels(self) -> list[AuthorityLevel]:
        return list(self._levels)

    def level_for_stage(self, stage: WorkflowStage) -> AuthorityLevel:
        try:
            return self._by_stage[WorkflowStage(stage)]
        except (KeyError, ValueError):
            raise ConfigurationError(f"Unknown review stage: {stage}") from None

    def level_for_role(self, role: UserRole) -> AuthorityLevel:
        try:
            return self._by_role[UserRole(role)]
        except (KeyError, ValueError):
            raise ConfigurationError(f"Unknown approver role: {role}") from None

    def role_for_stage(self, stage: WorkflowStage) -> UserRole:
        return self.level_for_stage(stage).role

    def stage_for_role(self, role: UserRole) -> WorkflowStage:
        return self.level_for_role(role).stage

    def max_amount(self, stage: WorkflowStage, role: UserRole) -> Optional[Decimal]:
        """
        Largest amount ``role`` may approve at ``stage``.

        Returns None for unlimited authority. The limit comes from the role;
        the stage must still be a known review stage.
        """
        self.level_for_stage(stage)
        return self.level_for_role(role).max_amount

    def has_authority(self, role: UserRole, stage: WorkflowStage) -> bool:
        """Whether ``role`` may act on a workflow sitting at ``stage``."""
        return self.level_for_role(role).level >= self.level_for_stage(stage).level

    def requires_escalation(
        self,
        stage: WorkflowStage,
        amount: Decimal,
        role: UserRole,
    ) -> bool:
        stage_level = self.level_for_stage(stage)
        role_level = self.level_for_role(role)

        if not role_level.allows(amount):
            return True
        if role_level.requires_escalation and not stage_level.allows(amount):
            return True
        return False

    def can_override(self, role: UserRole) -> bool:
        return self.level_for_role(role).can_override

    def timeout_hours(self, stage: WorkflowStage) -> float:
        return self.level_for_stage(stage).timeout_hours

    def minimum_role_for_amount(self, amount: Decimal) -> UserRole:
        """Lowest role whose authority covers ``amount``."""
        for lvl in self._levels:
            if lvl.allows(amount):
                return lvl.role
        return self._levels[-1].role
