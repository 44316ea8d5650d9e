"""
Stage Billing Module (``billing_modules.stage_billing``).

Responsibility
--------------
Milestone-based billing for legal cases: a case's billable work is split
into billing nodes attached to case phases, linked by dependencies.
Completing a node may issue an invoice, unblocks its dependants and drives
automation (consolidated invoices, deadline reminders, phase advance).

Architecture position
---------------------
**Modules layer** -- config schema, DTOs, collaborator protocols, ORM
models, SQL reference collaborators and the ``StageBillingService``
facade.  Computation lives in ``billing_engines``.

Invariants enforced
-------------------
* Completion is monotonic and compare-and-set at the store.
* Invoices are idempotent on their key.
* Node sets are replaced by deactivation, never hard deletion.

Failure modes
-------------
* Mutations return result objects with ``status`` and ``error_code``.
* Reads raise ``CaseNotFoundError`` / ``BillingNodeNotFoundError``.
"""
