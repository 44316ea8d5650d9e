"""
Rule Set Loader (``billing_config.loader``).

Responsibility
--------------
Loads a compliance rule-set YAML file and parses it into the frozen
``billing_config.schema.ComplianceRuleSet``.  This is build/test tooling;
runtime callers obtain rule sets only through
``billing_config.get_active_rules()``.

Invariants enforced
-------------------
* All parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields.
* Monetary values and rates are parsed to ``Decimal`` from their string
  form, never through ``float``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the parsed
  document for identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Invalid date or number  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import (
    ComplianceRuleSet,
    ExchangeRateDef,
    JurisdictionRules,
    RetainerRateDef,
    TaxRateDef,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_date(value: Any) -> date:
    """Parse a date from YAML (string or date object)."""
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value)
    raise ValueError(f"Cannot parse date from {value!r}")


def parse_decimal(value: Any, field_name: str) -> Decimal:
    """Parse a Decimal from a YAML scalar. Floats go through ``str``."""
    if isinstance(value, bool) or value is None:
        raise ValueError(f"{field_name}: expected a number, got {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{field_name}: cannot parse decimal from {value!r}") from None


def parse_jurisdiction(data: dict[str, Any]) -> JurisdictionRules:
    """Parse a JurisdictionRules entry."""
    return JurisdictionRules(
        jurisdiction=str(data["jurisdiction"]),
        minimum_hourly_rate=parse_decimal(
            data["minimum_hourly_rate"], "minimum_hourly_rate"
        ),
        maximum_contingency_percentage=parse_decimal(
            data["maximum_contingency_percentage"], "maximum_contingency_percentage"
        ),
    )


def parse_tax_rate(data: dict[str, Any]) -> TaxRateDef:
    """Parse a TaxRateDef entry."""
    return TaxRateDef(
        jurisdiction=str(data.get("jurisdiction", "*")),
        currency=data["currency"],
        rate=parse_decimal(data["rate"], "tax_rates.rate"),
        tax_type=data.get("tax_type", "VAT"),
    )


def parse_exchange_rate(data: dict[str, Any]) -> ExchangeRateDef:
    """Parse a directed ExchangeRateDef entry."""
    return ExchangeRateDef(
        from_currency=data["from"],
        to_currency=data["to"],
        rate=parse_decimal(data["rate"], "exchange_rates.rate"),
    )


def parse_rule_set(data: dict[str, Any]) -> ComplianceRuleSet:
    """
    Parse a ``ComplianceRuleSet`` from a dict.

    Preconditions:
        - ``data`` contains ``rule_set_id``, ``effective_from``,
          ``court_approval_threshold`` and at least one ``jurisdictions``
          entry.
    Postconditions:
        - Returns a frozen ``ComplianceRuleSet`` whose ``checksum`` is the
          SHA-256 of ``data``.
    Raises:
        KeyError: if required keys are missing.
        ValueError: if dates or numbers cannot be parsed.
    """
    retainer = data.get("retainer", {})
    retainer_rates = tuple(
        RetainerRateDef(case_type=case_type, monthly_rate=parse_decimal(rate, case_type))
        for case_type, rate in sorted(retainer.get("monthly_rates", {}).items())
    )

    return ComplianceRuleSet(
        rule_set_id=data["rule_set_id"],
        version=int(data.get("version", 1)),
        effective_from=parse_date(data["effective_from"]),
        court_approval_threshold_amount=parse_decimal(
            data["court_approval_threshold"], "court_approval_threshold"
        ),
        jurisdictions=tuple(parse_jurisdiction(j) for j in data["jurisdictions"]),
        tax_rates=tuple(parse_tax_rate(t) for t in data.get("tax_rates", [])),
        exchange_rates=tuple(
            parse_exchange_rate(r) for r in data.get("exchange_rates", [])
        ),
        retainer_rates=retainer_rates,
        default_retainer_monthly_rate=parse_decimal(
            retainer.get("default_monthly_rate", "0"), "retainer.default_monthly_rate"
        ),
        retainer_refundable_share=parse_decimal(
            retainer.get("refundable_share", "0"), "retainer.refundable_share"
        ),
        description=data.get("description", ""),
        checksum=compute_checksum(data),
    )


def load_rule_set(path: Path) -> ComplianceRuleSet:
    """Load and parse a rule-set YAML file."""
    return parse_rule_set(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
