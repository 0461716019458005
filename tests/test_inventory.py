from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.orders.app import inventory
from apps.orders.app.db import Ingredient, MenuItem, MenuItemIngredient
from apps.orders.app.units import convert, normalize_unit


@pytest.mark.parametrize(
    "amount,src,dst,expected",
    [
        (1, "kg", "g", 1000),
        (250, "grams", "kg", 0.25),
        (2, "L", "ml", 2000),
        (3, "cl", "ml", 30),
        (1, "oz", "g", 28.35),
        (2, "shot", "ml", 50),
        (2, "shots", "g", 36),
        (1, "pump", "ml", 15),
        (1, "cup", "l", 0.24),
        (4, "sprinkle", "g", 2),
        (50, "ml", "shot", 2),
        (36, "g", "shot", 2),
    ],
)
def test_unit_conversion(amount, src, dst, expected):
    assert convert(amount, src, dst) == pytest.approx(expected)


def test_unknown_conversion_returns_amount_unchanged(caplog):
    assert convert(5, "kg", "ml") == 5
    assert convert(2, "pc", "g") == 2
    assert "no unit conversion" in caplog.text


def test_normalize_unit():
    assert normalize_unit(" Grams ") == "g"
    assert normalize_unit("Litres") == "l"
    assert normalize_unit(None) == ""


def _cafe(engine):
    with Session(engine) as s:
        milk = Ingredient(name="Milk", actual_quantity=1.0, actual_unit="l", low_stock_threshold=0.5)
        beans = Ingredient(name="Beans", actual_quantity=100.0, actual_unit="g", low_stock_threshold=200.0)
        latte = MenuItem(name="Latte", price=120.0)
        cappu = MenuItem(name="Cappuccino", price=110.0)
        s.add_all([milk, beans, latte, cappu])
        s.flush()
        s.add_all(
            [
                MenuItemIngredient(menu_item_id=latte.id, ingredient_id=milk.id, required_display_amount=200, recipe_unit="ml"),
                MenuItemIngredient(menu_item_id=latte.id, ingredient_id=beans.id, required_display_amount=1, recipe_unit="shot"),
                MenuItemIngredient(menu_item_id=cappu.id, ingredient_id=milk.id, required_display_amount=150, recipe_unit="ml"),
            ]
        )
        s.commit()
        return {"milk": milk.id, "beans": beans.id, "latte": latte.id, "cappuccino": cappu.id}


def test_requirements_are_summed_across_lines(engine):
    ids = _cafe(engine)
    with Session(engine) as s:
        need = inventory.requirements(
            s,
            [
                {"name": "Latte", "quantity": 2},
                {"menuItemId": ids["cappuccino"], "quantity": 2},
                {"name": "Mystery cake", "quantity": 1},
            ],
        )
    assert need[ids["milk"]]["required"] == pytest.approx(0.7)
    assert need[ids["milk"]]["unit"] == "l"
    assert need[ids["beans"]]["required"] == pytest.approx(36)


def test_fulfillment_fails_when_combined_lines_exceed_stock(engine):
    ids = _cafe(engine)
    with Session(engine) as s:
        ok = inventory.check_fulfillment(s, [{"name": "Latte", "quantity": 2}])
        short = inventory.check_fulfillment(
            s, [{"name": "Latte", "quantity": 3}, {"menuItemId": ids["cappuccino"], "quantity": 3}]
        )
    assert ok["canFulfillOrder"] is True
    assert short["canFulfillOrder"] is False
    names = [r["ingredientName"] for r in short["summary"]["shortfallItems"]]
    assert names == ["Milk"]


def test_deduction_never_goes_below_zero(engine):
    ids = _cafe(engine)
    with Session(engine) as s:
        inventory.deduct_for_items(s, [{"name": "Latte", "quantity": 10}])
        s.commit()
        stock = dict(s.execute(select(Ingredient.id, Ingredient.actual_quantity)).all())
    assert stock[ids["milk"]] == 0
    assert stock[ids["beans"]] == 0


def test_low_stock_alert_goes_to_admin_and_staff(engine, notifier):
    _cafe(engine)
    with Session(engine) as s:
        items = inventory.alert_low_stock(s, notifier)
    assert [i["name"] for i in items] == ["Beans"]
    assert sorted(notifier.rooms("low-stock-alert")) == ["admin-room", "staff-room"]


def test_no_alert_when_stock_is_fine(engine, notifier):
    with Session(engine) as s:
        s.add(Ingredient(name="Sugar", actual_quantity=5000, actual_unit="g", low_stock_threshold=100))
        s.commit()
        assert inventory.alert_low_stock(s, notifier) == []
    assert notifier.events == []


def test_low_stock_endpoints(client, engine, notifier):
    _cafe(engine)
    r = client.get("/inventory/low-stock")
    assert r.status_code == 200
    assert r.json()["count"] == 1
    r = client.post("/inventory/low-stock/check")
    assert r.json()["alerted"] is True
    assert "admin-room" in notifier.rooms("low-stock-alert")


def test_check_fulfillment_endpoint(client, engine):
    _cafe(engine)
    r = client.post("/guest/check-fulfillment", json={"items": [{"name": "Latte", "quantity": 9}]})
    assert r.status_code == 200
    assert r.json()["canFulfillOrder"] is False
