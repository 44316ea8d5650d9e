"""
Validation result value objects shared by the billing engines.

Issues carry a machine-readable ``code`` so callers never have to parse
message text.  ``subject`` names the node, document or approval the issue
is about.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ValidationIssue:
    """A single validation error or warning."""

    code: str
    message: str
    subject: str | None = None


@dataclass(frozen=True)
class ComplianceCheck:
    """Regulatory violations and suggestions found during validation."""

    violations: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()

    @property
    def meets_requirements(self) -> bool:
        return not self.violations


@dataclass(frozen=True)
class StageBillingValidation:
    """Outcome of validating a billing node set."""

    errors: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()
    recommendations: tuple[str, ...] = ()
    compliance: ComplianceCheck = field(default_factory=ComplianceCheck)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error_codes(self) -> tuple[str, ...]:
        return tuple(issue.code for issue in self.errors)
