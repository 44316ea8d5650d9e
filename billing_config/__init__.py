"""
billing_config -- single public entrypoint for compliance rule sets.

Responsibility:
    Provides the ONLY way to obtain regulatory constants at runtime through
    ``get_active_rules()``.  Returns a frozen ``ComplianceRuleSet``.  YAML
    loading is internal tooling and never exposed to callers.

Architecture position:
    Configuration.  Sits above ``billing_kernel`` and below
    ``billing_engines`` callers, ``billing_modules`` and
    ``billing_services``.  The kernel MUST NEVER import from
    ``billing_config``.

Failure modes:
    - ``RuleSetNotFoundError`` -- no rule set file with the requested id,
      or no rule set at all when no id is given.
    - ``ValueError`` / ``KeyError`` -- malformed rule set file.

Audit relevance:
    Every successful ``get_active_rules()`` call emits a
    ``BILLING_RULES_TRACE`` log entry with the rule set id, version and
    checksum, tying every fee result to the exact constants that produced it.
"""

from __future__ import annotations

from pathlib import Path

from billing_config.loader import load_rule_set
from billing_config.schema import ComplianceRuleSet
from billing_kernel.exceptions import RuleSetNotFoundError
from billing_kernel.logging_config import get_logger

__all__ = ["ComplianceRuleSet", "get_active_rules"]

_logger = get_logger("config")

# Default rule sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"


def get_active_rules(
    rule_set_id: str | None = None,
    config_dir: Path | None = None,
) -> ComplianceRuleSet:
    """The ONLY public rule-set entrypoint.

    Args:
        rule_set_id: Rule set to load (file stem under the sets directory).
            When omitted, the set with the latest ``effective_from`` wins.
        config_dir: Override path to the rule sets directory.
            Defaults to billing_config/sets/.

    Returns:
        The frozen ComplianceRuleSet.

    Raises:
        RuleSetNotFoundError: If no matching rule set file exists.
    """
    sets_dir = config_dir or _DEFAULT_CONFIG_DIR

    if rule_set_id is not None:
        path = sets_dir / f"{rule_set_id}.yaml"
        if not path.is_file():
            raise RuleSetNotFoundError(rule_set_id)
        rules = load_rule_set(path)
    else:
        candidates = [load_rule_set(p) for p in sorted(sets_dir.glob("*.yaml"))]
        if not candidates:
            raise RuleSetNotFoundError("<latest>")
        rules = max(candidates, key=lambda r: (r.effective_from, r.version))

    _logger.info(
        "BILLING_RULES_TRACE",
        extra={
            "trace_type": "BILLING_RULES_TRACE",
            "rule_set_id": rules.rule_set_id,
            "rule_set_version": rules.version,
            "effective_from": rules.effective_from.isoformat(),
            "checksum": rules.checksum,
        },
    )
    return rules
