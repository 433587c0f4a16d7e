"""Critical field confidence check.

Critical fields are the ones that cause direct financial or operational harm
when wrong: the amount owed, when it is due, whose account it is and which
meter point it belongs to. They are held to a near-perfect bar independent
of the document's overall confidence.
"""

from collections.abc import Callable, Iterable

from services.extraction.schema import ExtractedDocument, Valued

CRITICAL_LABELS: tuple[str, ...] = (
    "total_amount_due",
    "due_date",
    "account_number",
    "mprn",
    "gprn",
)


def _total_amount_due(document: ExtractedDocument) -> Iterable[Valued]:
    yield document.payment.total_amount_due


def _due_date(document: ExtractedDocument) -> Iterable[Valued]:
    for bill in document.bills:
        yield bill.billing.due_date


def _account_number(document: ExtractedDocument) -> Iterable[Valued]:
    yield document.customer.account_number
    for bill in document.bills:
        yield bill.account_number


def _mprn(document: ExtractedDocument) -> Iterable[Valued]:
    for bill in document.bills:
        if bill.electricity is not None:
            yield bill.electricity.mprn


def _gprn(document: ExtractedDocument) -> Iterable[Valued]:
    for bill in document.bills:
        if bill.gas is not None:
            yield bill.gas.gprn


_LOCATORS: dict[str, Callable[[ExtractedDocument], Iterable[Valued]]] = {
    "total_amount_due": _total_amount_due,
    "due_date": _due_date,
    "account_number": _account_number,
    "mprn": _mprn,
    "gprn": _gprn,
}


def _field_confidence(field: Valued) -> float | None:
    if field.confidence is not None:
        return field.confidence
    return 0.0 if field.present else None


def critical_field_confidences(document: ExtractedDocument) -> dict[str, float]:
    """Lowest confidence per critical label.

    Labels with no occurrence in this document (a gas-only bill has no MPRN)
    are left out rather than reported as failing. A value found without a
    confidence annotation counts as 0.0.
    """
    found: dict[str, float] = {}
    for label in CRITICAL_LABELS:
        confidences = [
            confidence
            for confidence in map(_field_confidence, _LOCATORS[label](document))
            if confidence is not None
        ]
        if confidences:
            found[label] = min(confidences)
    return found


def check_critical_fields(
    document: ExtractedDocument,
    threshold: float = 0.995,
) -> list[tuple[str, float]]:
    """Critical fields whose confidence falls below the threshold.

    Args:
        document: Normalized extraction
        threshold: Minimum acceptable confidence

    Returns:
        (label, confidence) pairs in fixed label order; empty when all pass
    """
    return [
        (label, confidence)
        for label, confidence in critical_field_confidences(document).items()
        if confidence < threshold
    ]
