"""
Module: billing_engines
Responsibility:
    Package entrypoint for the pure billing engines.  Higher layers
    (billing_services, billing_modules) import engine symbols from the
    sub-modules directly.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import billing_kernel (and sibling engine modules).
    MUST NOT import billing_services or billing_modules.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()`` or ``date.today()``.
      Dates are passed in as explicit parameters by services.
    - Decimal-only arithmetic: all monetary amounts use ``Decimal``.
    - Determinism: identical inputs always produce identical outputs.
    - Regulatory constants arrive through an explicit ``ComplianceRules``
      argument, never through module-level state.

Usage:
    from billing_engines.fees import calculate_fee, FeeCalculationRequest
    from billing_engines.billing_graph import build_billing_graph
    from billing_engines.completion import validate_completion
    from billing_engines.automation import plan_automation
"""
