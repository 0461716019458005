from __future__ import annotations

import logging

_log = logging.getLogger("cafe.inventory")

_ALIASES = {
    "g": "g", "gram": "g", "grams": "g", "gr": "g",
    "kg": "kg", "kilogram": "kg", "kilograms": "kg",
    "mg": "mg", "milligram": "mg", "milligrams": "mg",
    "ml": "ml", "milliliter": "ml", "milliliters": "ml", "millilitre": "ml",
    "l": "l", "liter": "l", "liters": "l", "litre": "l", "litres": "l",
    "cl": "cl",
    "oz": "oz", "ounce": "oz", "ounces": "oz",
    "lb": "lb", "lbs": "lb", "pound": "lb", "pounds": "lb",
    "shot": "shot", "shots": "shot",
    "pump": "pump", "pumps": "pump",
    "cup": "cup", "cups": "cup",
    "sprinkle": "sprinkle", "sprinkles": "sprinkle",
    "pc": "pc", "pcs": "pc", "piece": "pc", "pieces": "pc",
}

# Factor to the dimension's base unit (ml for volume, g for weight).
VOLUME = {"ml": 1.0, "cl": 10.0, "l": 1000.0}
WEIGHT = {"mg": 0.001, "g": 1.0, "kg": 1000.0, "oz": 28.35, "lb": 453.6}

# Bar/kitchen measures; a shot is espresso volume or dosed coffee weight.
STANDARD_MEASURES = {
    "shot": {"ml": 25.0, "g": 18.0},
    "pump": {"ml": 15.0},
    "cup": {"ml": 240.0},
    "sprinkle": {"g": 0.5},
}


def normalize_unit(unit: str | None) -> str:
    u = (unit or "").strip().lower()
    return _ALIASES.get(u, u)


def _to_base(amount: float, unit: str) -> tuple[float, str] | None:
    if unit in VOLUME:
        return amount * VOLUME[unit], "ml"
    if unit in WEIGHT:
        return amount * WEIGHT[unit], "g"
    return None


def _from_base(amount: float, base: str, unit: str) -> float | None:
    table = VOLUME if base == "ml" else WEIGHT
    if unit not in table:
        return None
    return amount / table[unit]


def convert(amount: float, from_unit: str | None, to_unit: str | None) -> float:
    """
    Convert `amount` between recipe and stock units.

    Unknown pairs are returned unchanged (and logged) so that a missing
    mapping under-reports rather than blocks an order.
    """
    src = normalize_unit(from_unit)
    dst = normalize_unit(to_unit)
    if src == dst:
        return amount

    if src in STANDARD_MEASURES:
        for base, factor in STANDARD_MEASURES[src].items():
            out = _from_base(amount * factor, base, dst) if dst not in STANDARD_MEASURES else None
            if out is not None:
                return out
    elif dst in STANDARD_MEASURES:
        for base, factor in STANDARD_MEASURES[dst].items():
            based = _to_base(amount, src)
            if based is not None and based[1] == base:
                return based[0] / factor
    else:
        based = _to_base(amount, src)
        if based is not None:
            out = _from_base(based[0], based[1], dst)
            if out is not None:
                return out

    _log.warning("no unit conversion from %s to %s; using amount as-is", from_unit, to_unit)
    return amount
