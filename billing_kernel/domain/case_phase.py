"""
Case lifecycle phases (``billing_kernel.domain.case_phase``).

Billing nodes are attached to one of these phases. Phases advance
strictly forward in declaration order; CLOSURE_REVIEW_ARCHIVING is
terminal.
"""

from __future__ import annotations

from enum import Enum


class CasePhase(str, Enum):
    """Case lifecycle phases, in lifecycle order."""

    INTAKE_RISK_ASSESSMENT = "INTAKE_RISK_ASSESSMENT"
    PRE_PROCEEDING_PREPARATION = "PRE_PROCEEDING_PREPARATION"
    FORMAL_PROCEEDINGS = "FORMAL_PROCEEDINGS"
    RESOLUTION_POST_PROCEEDING = "RESOLUTION_POST_PROCEEDING"
    CLOSURE_REVIEW_ARCHIVING = "CLOSURE_REVIEW_ARCHIVING"

    @property
    def is_terminal(self) -> bool:
        return self is CasePhase.CLOSURE_REVIEW_ARCHIVING

    @property
    def next_phase(self) -> CasePhase | None:
        """The phase that follows this one, or None if terminal."""
        members = list(CasePhase)
        idx = members.index(self)
        if idx + 1 >= len(members):
            return None
        return members[idx + 1]
