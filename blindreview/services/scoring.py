"""
Scoring Calculator.

    overall = Σ(normalized_i × weight_i) / Σ(weight_i)
    normalized_i = score_i / max_score_i × 10

Only criteria with a recorded score take part. Returns 0.00 when nothing is
scored. Arithmetic is done in Decimal and rounded half-up to two places so
stored and displayed values agree (8.666… → 8.67).
"""

from decimal import ROUND_HALF_UP, Decimal

TWO_PLACES = Decimal("0.01")
SCALE = Decimal(10)


def _dec(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def normalize(score, max_score) -> Decimal:
    """Map a raw score onto the 0–10 scale."""
    return _dec(score) / _dec(max_score) * SCALE


def compute_overall_score(entries) -> Decimal:
    """
    Weighted, normalized overall score.

    Args:
        entries: iterable of ``(max_score, weight, score)``; entries whose
                 score is None are skipped.

    Returns:
        Decimal quantized to two places.
    """
    weighted_sum = Decimal(0)
    weight_total = Decimal(0)
    for max_score, weight, score in entries:
        if score is None:
            continue
        w = _dec(weight)
        weighted_sum += normalize(score, max_score) * w
        weight_total += w

    if weight_total == 0:
        return Decimal("0.00")
    return (weighted_sum / weight_total).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def score_review(criteria, scores_by_criterion) -> Decimal:
    """Overall score for ``{criterion_id: score}`` against a call's criteria."""
    return compute_overall_score(
        (c.max_score, c.weight, scores_by_criterion.get(c.id)) for c in criteria
    )
