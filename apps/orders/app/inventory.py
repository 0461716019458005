from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from apps.orders.app.db import Ingredient, MenuItem, MenuItemIngredient
from apps.orders.app.notify import ADMIN_ROOM, LOW_STOCK, STAFF_ROOM, Notifier, emit_many, now_iso
from apps.orders.app.units import convert

_log = logging.getLogger("cafe.inventory")

_ingredients = Ingredient.__table__


def _menu_item_ref(item: Dict[str, Any]) -> Optional[int]:
    for key in ("menuItemId", "menu_item_id", "id"):
        raw = item.get(key)
        if raw in (None, ""):
            continue
        try:
            return int(raw)
        except (TypeError, ValueError):
            continue
    return None


def _quantity(item: Dict[str, Any]) -> float:
    try:
        q = float(item.get("quantity") or 1)
    except (TypeError, ValueError):
        q = 1.0
    return max(q, 0.0)


def _resolve_items(executor, items: Iterable[Dict[str, Any]]) -> List[tuple[int, float]]:
    """(menu_item_id, quantity) pairs; lines matching no menu item are dropped."""
    resolved: List[tuple[int, float]] = []
    by_name: Dict[str, Optional[int]] = {}
    for item in items:
        if not isinstance(item, dict):
            continue
        mid = _menu_item_ref(item)
        if mid is None:
            name = (item.get("name") or "").strip()
            if not name:
                continue
            if name not in by_name:
                by_name[name] = executor.execute(
                    select(MenuItem.id).where(MenuItem.name == name).order_by(MenuItem.id).limit(1)
                ).scalar()
            mid = by_name[name]
            if mid is None:
                continue
        resolved.append((mid, _quantity(item)))
    return resolved


def requirements(executor, items: Iterable[Dict[str, Any]]) -> Dict[int, Dict[str, Any]]:
    """
    Total stock needed per ingredient for `items`, expressed in each
    ingredient's stock unit. Works with a Session or a Connection.
    """
    needed: Dict[int, Dict[str, Any]] = {}
    for menu_item_id, qty in _resolve_items(executor, items):
        rows = executor.execute(
            select(
                MenuItemIngredient.ingredient_id,
                MenuItemIngredient.required_display_amount,
                MenuItemIngredient.recipe_unit,
                Ingredient.name,
                Ingredient.actual_quantity,
                Ingredient.actual_unit,
            )
            .join(Ingredient, Ingredient.id == MenuItemIngredient.ingredient_id)
            .where(MenuItemIngredient.menu_item_id == menu_item_id)
        ).all()
        for row in rows:
            amount = convert((row.required_display_amount or 0.0) * qty, row.recipe_unit, row.actual_unit)
            entry = needed.setdefault(
                row.ingredient_id,
                {
                    "ingredientId": row.ingredient_id,
                    "ingredientName": row.name,
                    "required": 0.0,
                    "available": float(row.actual_quantity or 0.0),
                    "unit": row.actual_unit,
                },
            )
            entry["required"] += amount
    return needed


def check_fulfillment(executor, items: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    results = []
    for entry in requirements(executor, items).values():
        required = round(entry["required"], 4)
        ok = entry["available"] >= required
        results.append(
            {
                **entry,
                "required": required,
                "canFulfill": ok,
                "shortfall": 0 if ok else round(required - entry["available"], 4),
            }
        )
    shortfalls = [r for r in results if not r["canFulfill"]]
    return {
        "canFulfillOrder": not shortfalls,
        "validationResults": results,
        "summary": {
            "totalIngredients": len(results),
            "canFulfill": len(results) - len(shortfalls),
            "cannotFulfill": len(shortfalls),
            "shortfallItems": shortfalls,
        },
    }


def deduct_for_items(executor, items: Iterable[Dict[str, Any]]) -> int:
    """Take the recipe amounts for `items` out of stock, never below zero."""
    touched = 0
    for ingredient_id, entry in requirements(executor, items).items():
        amount = entry["required"]
        if amount <= 0:
            continue
        executor.execute(
            update(_ingredients)
            .where(_ingredients.c.id == ingredient_id)
            .values(
                actual_quantity=case(
                    (_ingredients.c.actual_quantity > amount, _ingredients.c.actual_quantity - amount),
                    else_=0.0,
                )
            )
        )
        touched += 1
        if amount > entry["available"]:
            _log.warning(
                "stock for %s went below zero (needed %.3f%s, had %.3f); clamped",
                entry["ingredientName"], amount, entry["unit"], entry["available"],
            )
    return touched


def low_stock(s: Session) -> List[Ingredient]:
    stmt = (
        select(Ingredient)
        .where(
            Ingredient.is_active.is_(True),
            Ingredient.low_stock_threshold.is_not(None),
            Ingredient.actual_quantity <= Ingredient.low_stock_threshold,
        )
        .order_by(Ingredient.actual_quantity.asc())
    )
    return list(s.execute(stmt).scalars().all())


def low_stock_payload(items: List[Ingredient]) -> List[Dict[str, Any]]:
    return [
        {
            "id": i.id,
            "name": i.name,
            "actual_quantity": i.actual_quantity,
            "unit": i.actual_unit,
            "low_stock_threshold": i.low_stock_threshold,
        }
        for i in items
    ]


def alert_low_stock(s: Session, notifier: Notifier) -> List[Dict[str, Any]]:
    """Emit `low-stock-alert` to the admin and staff rooms when anything is short."""
    items = low_stock_payload(low_stock(s))
    if items:
        _log.info("low stock on %d ingredients", len(items))
        emit_many(notifier, (ADMIN_ROOM, STAFF_ROOM), LOW_STOCK,
                  {"items": items, "count": len(items), "timestamp": now_iso()})
    return items
