"""
Ticket Tracker
Delivery points calculator.

Points come from a fixed 4×4 matrix indexed by (complexity, risk), scaled
by the item type:

    ticket            10 × (complexity + risk)     → 20 .. 80
    incident           5 × (complexity + risk)     → 10 .. 40
    service_request    5 × (complexity + risk)     → 10 .. 40

The matrix is monotonically non-decreasing in both arguments. Inputs
outside 1..4 are rejected; callers validate before persisting.
"""

from __future__ import annotations

from ticket_tracker.core.exceptions import ValidationError

LEVELS = (1, 2, 3, 4)

COMPLEXITY_LABELS = {1: "C1 - Low", 2: "C2 - Medium", 3: "C3 - High", 4: "C4 - Very High"}
RISK_LABELS = {1: "R1 - Low", 2: "R2 - Medium", 3: "R3 - High", 4: "R4 - Critical"}

_BASE_MATRIX: dict[tuple[int, int], int] = {
    (c, r): c + r for c in LEVELS for r in LEVELS
}

_MULTIPLIERS = {
    "ticket": 10,
    "incident": 5,
    "service_request": 5,
}


def _validate_level(name: str, value) -> int:
    # bool is an int subclass; True must not sneak in as level 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer", details={name: value})
    if value not in LEVELS:
        raise ValidationError(f"{name} must be between 1 and 4", details={name: value})
    return value


def calculate_points(complexity: int, risk: int, item_type: str = "ticket") -> int:
    """Return the delivery points for (complexity, risk).

    Raises:
        ValidationError: complexity/risk outside 1..4 or unknown item type.
    """
    c = _validate_level("complexity", complexity)
    r = _validate_level("risk", risk)
    multiplier = _MULTIPLIERS.get(item_type)
    if multiplier is None:
        raise ValidationError(f"Unknown item type '{item_type}'", details={"item_type": item_type})
    return multiplier * _BASE_MATRIX[(c, r)]


def points_matrix(item_type: str = "ticket") -> dict:
    """Full 16-entry lookup table, for reference endpoints and UI calculators."""
    rows = []
    for c in LEVELS:
        rows.append({
            "complexity": c,
            "label": COMPLEXITY_LABELS[c],
            "points": {str(r): calculate_points(c, r, item_type) for r in LEVELS},
        })
    return {
        "item_type": item_type,
        "risk_labels": {str(r): RISK_LABELS[r] for r in LEVELS},
        "rows": rows,
    }
