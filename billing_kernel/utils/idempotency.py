"""
Idempotency key generation utilities.

Idempotency keys let the invoice issuer recognise a retried request and
return the invoice it already created instead of issuing a duplicate.
"""


def generate_idempotency_key(
    producer: str,
    action: str,
    subject_id: str,
) -> str:
    """
    Generate an idempotency key for an outbound request.

    Format: producer:action:subject_id

    Example:
        >>> generate_idempotency_key("stage_billing", "milestone_invoice", "CASE-001:N1")
        'stage_billing:milestone_invoice:CASE-001:N1'
    """
    return f"{producer}:{action}:{subject_id}"

