"""
Approval policy loader.

Reads the versioned policy YAML once at start-up and turns it into an
ApprovalPolicy: the authority table, the per-action rule table and the
limits used by validation, hierarchy actions and SLA extensions.

Failure modes:
* Missing file, malformed YAML or a document that fails schema
  validation -> ConfigurationError.

``compute_checksum`` gives a deterministic SHA-256 over the parsed
document so the active policy can be matched to a reviewed baseline.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from clearance.config import settings
from clearance.exceptions import ConfigurationError
from clearance.models.workflow import AuthorizationMethod, DecisionAction
from clearance.policy.authority import AuthorityLevel, AuthorityPolicy
from clearance.policy.rules import ActionRule, ActionRuleTable

logger = logging.getLogger(__name__)


class ValidationLimits(BaseModel):
    """Thresholds used by the decision validator beyond the rule table."""

    model_config = ConfigDict(frozen=True)

    allowed_authorization_methods: frozenset[AuthorizationMethod] = frozenset(AuthorizationMethod)
    high_value_amount: Decimal = Decimal("75000")
    queue_time_warning_hours: float = 24
    business_hours_start: int = Field(8, ge=0, le=23)
    business_hours_end: int = Field(18, ge=1, le=24)
    business_days: frozenset[int] = frozenset({0, 1, 2, 3, 4})
    critical_risk_amount: Decimal = Decimal("100000")
    elevated_risk_amount: Decimal = Decimal("50000")


class HierarchyLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_justification_length: int = 50
    min_override_justification_length: int = 100
    min_audit_reason_length: int = 30
    min_risk_acknowledgment_length: int = 50


class SLAExtensionLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_hours: int = Field(1, ge=1)
    max_hours: int = Field(168, ge=1)
    min_reason_length: int = 50
    min_business_justification_length: int = 75
    min_impact_assessment_length: int = 50


class PolicyDocument(BaseModel):
    """Schema of the policy YAML file."""

    version: str = Field(..., min_length=1)
    authority_levels: list[AuthorityLevel]
    action_rules: dict[DecisionAction, ActionRule]
    validation: ValidationLimits = Field(default_factory=ValidationLimits)
    hierarchy: HierarchyLimits = Field(default_factory=HierarchyLimits)
    sla_extension: SLAExtensionLimits = Field(default_factory=SLAExtensionLimits)


@dataclass(frozen=True)
class ApprovalPolicy:
    """The active, immutable approval policy."""

    version: str
    checksum: str
    authority: AuthorityPolicy
    rules: ActionRuleTable
    validation: ValidationLimits
    hierarchy: HierarchyLimits
    sla_extension: SLAExtensionLimits
    source: Optional[Path] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "checksum": self.checksum,
            "source": str(self.source) if self.source else None,
        }


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a parsed policy document."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file into a dict, raising ConfigurationError on failure."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Policy file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Malformed policy file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Policy file {path} must contain a mapping")
    return data


def parse_policy(data: dict[str, Any], source: Optional[Path] = None) -> ApprovalPolicy:
    """Validate a parsed policy document and build the ApprovalPolicy."""
    try:
        document = PolicyDocument.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid approval policy: {e}") from e

    if document.sla_extension.min_hours > document.sla_extension.max_hours:
        raise ConfigurationError("sla_extension.min_hours exceeds sla_extension.max_hours")

    return ApprovalPolicy(
        version=document.version,
        checksum=compute_checksum(data),
        authority=AuthorityPolicy(document.authority_levels),
        rules=ActionRuleTable(document.action_rules),
        validation=document.validation,
        hierarchy=document.hierarchy,
        sla_extension=document.sla_extension,
        source=source,
    )


def load_policy(path: Path) -> ApprovalPolicy:
    """Load and validate the policy file at ``path``."""
    policy = parse_policy(load_yaml_file(path), source=path)
    logger.info(
        f"Loaded approval policy version={policy.version} "
        f"checksum={policy.checksum[:12]} from {path}"
    )
    return policy


@lru_cache(maxsize=1)
def get_active_policy() -> ApprovalPolicy:
    """The process-wide policy, loaded from ``settings.policy_path`` on first use."""
    return load_policy(Path(settings.policy_path))
