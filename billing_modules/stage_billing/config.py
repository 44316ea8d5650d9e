"""
Stage Billing Configuration Schema.

Per-case billing policy.  One configuration is active per case; replacing
it never alters nodes that are already completed.
"""

from dataclasses import asdict, dataclass, fields
from typing import Any, Self

from billing_engines.automation import StageBillingAutomation, resolve_automation_rules
from billing_kernel.db.types import validate_currency
from billing_kernel.exceptions import InvalidArgumentError
from billing_kernel.logging_config import get_logger

logger = get_logger("modules.stage_billing.config")

# Accepted camelCase spellings of the configuration fields.
_CAMEL_CASE_KEYS = {
    "autoAdvance": "auto_advance",
    "requireCompletion": "require_completion",
    "allowPartialBilling": "allow_partial_billing",
    "sendNotifications": "send_notifications",
    "approvalRequired": "approval_required",
    "gracePeriod": "grace_period_days",
    "grace_period": "grace_period_days",
}


@dataclass(frozen=True)
class StageBillingConfiguration:
    """
    Stage billing policy for one case.

    Field defaults are the firm-wide policy:

        config = StageBillingConfiguration(
            require_completion=False,
            grace_period_days=14,
        )
    """

    # Advance the case phase once every node of the phase is completed
    auto_advance: bool = True

    # Completion criteria failures block completion (otherwise warnings)
    require_completion: bool = True

    # Invoices may cover part of a phase
    allow_partial_billing: bool = False

    # Deadline reminders are dispatched
    send_notifications: bool = True

    # Every completion needs an approver
    approval_required: bool = False

    # Days before the due date a ready node becomes billable
    grace_period_days: int = 7

    currency: str = "CNY"

    def __post_init__(self):
        object.__setattr__(self, "currency", validate_currency(self.currency))
        if self.grace_period_days < 0:
            raise InvalidArgumentError("grace_period_days", "cannot be negative")
        logger.info(
            "stage_billing_config_initialized",
            extra={
                "auto_advance": self.auto_advance,
                "require_completion": self.require_completion,
                "allow_partial_billing": self.allow_partial_billing,
                "send_notifications": self.send_notifications,
                "approval_required": self.approval_required,
                "grace_period_days": self.grace_period_days,
                "currency": self.currency,
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with firm-wide defaults."""
        logger.info("stage_billing_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create config from dictionary (API payload or stored row)."""
        logger.info(
            "stage_billing_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        known = {f.name for f in fields(cls)}
        normalized: dict[str, Any] = {}
        for key, value in data.items():
            name = _CAMEL_CASE_KEYS.get(key, key)
            if name not in known:
                raise InvalidArgumentError(key, "unknown configuration field")
            normalized[name] = value
        return cls(**normalized)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def automation(self) -> StageBillingAutomation:
        """Automation rules implied by this policy."""
        return resolve_automation_rules(
            auto_advance=self.auto_advance,
            send_notifications=self.send_notifications,
            approval_required=self.approval_required,
        )
