"""
billing_services -- Package init and public API.

Responsibility:
    Orchestration services that compose the pure billing engines
    (billing_engines/) with collaborators that perform I/O: the case
    store, the invoice issuer and the notification sink.

Architecture position:
    Services -- orchestration over engines + kernel.

    Dependency direction:
        billing_services/ -> billing_engines/  (allowed)
        billing_services/ -> billing_kernel/   (allowed)
        billing_engines/  -> billing_services/ (FORBIDDEN)
        billing_kernel/   -> billing_services/ (FORBIDDEN)
"""

from billing_services.automation_runner import AutomationRunner
from billing_services.fee_service import (
    FeeCalculationService,
    FeeServiceResult,
    FeeServiceStatus,
)

__all__ = [
    "AutomationRunner",
    "FeeCalculationService",
    "FeeServiceResult",
    "FeeServiceStatus",
]
