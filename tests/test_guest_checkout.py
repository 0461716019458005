from __future__ import annotations

import re

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from apps.orders.app import lifecycle
from apps.orders.app.db import Customer, Ingredient, Order, business_day
from apps.orders.app.errors import ValidationError


def _burger_order(**kw) -> lifecycle.GuestOrder:
    base = dict(
        customer_name="Ana",
        items=[{"name": "Burger", "quantity": 2, "price": 150}],
        total_amount=300,
        payment_method="cash",
    )
    base.update(kw)
    return lifecycle.GuestOrder(**base)


def test_guest_order_starts_unpaid_and_waits_for_verification(engine, notifier, seed_menu):
    seed_menu(stock=1000)
    with Session(engine) as s:
        order = lifecycle.place_order(s, notifier, _burger_order())
        assert re.fullmatch(r"ORD-\d+-[a-z0-9]{9}", order.order_id)
        assert order.status == "pending_verification"
        assert order.payment_status == "pending"
        assert order.payment_method == "cash"
        assert order.total_price == 300
        assert order.queue_position == 1
        assert order.business_day == business_day()
        # Stock is only taken when the payment settles.
        assert s.execute(select(Ingredient.actual_quantity)).scalar_one() == 1000

    assert sorted(notifier.rooms("new-order-received")) == ["admin-room", "staff-room"]


def test_checkout_refused_when_stock_is_short_creates_no_order(engine, notifier, seed_menu):
    seed_menu(stock=100)
    with Session(engine) as s:
        with pytest.raises(ValidationError) as ei:
            lifecycle.place_order(s, notifier, _burger_order())
        details = ei.value.extra["fulfillment_details"]
        assert details["canFulfillOrder"] is False
        assert details["summary"]["cannotFulfill"] == 1
        assert details["summary"]["shortfallItems"][0]["shortfall"] == 200
        assert s.execute(select(func.count(Order.id))).scalar_one() == 0
    assert notifier.events == []


def test_checkout_requires_name_and_items(engine, notifier):
    with Session(engine) as s:
        with pytest.raises(ValidationError) as ei:
            lifecycle.place_order(s, notifier, _burger_order(items=[]))
        assert ei.value.detail == "Missing required fields: customerName, items"
        with pytest.raises(ValidationError):
            lifecycle.place_order(s, notifier, _burger_order(customer_name="  "))


def test_total_defaults_to_sum_of_lines(engine, notifier, seed_menu):
    seed_menu()
    with Session(engine) as s:
        order = lifecycle.place_order(s, notifier, _burger_order(total_amount=None))
        assert order.total_price == 300


def test_queue_positions_increase_within_a_day(engine, notifier, seed_menu):
    seed_menu(stock=10_000)
    with Session(engine) as s:
        a = lifecycle.place_order(s, notifier, _burger_order())
        b = lifecycle.place_order(s, notifier, _burger_order())
        c = lifecycle.place_order(s, notifier, _burger_order())
        assert [a.queue_position, b.queue_position, c.queue_position] == [1, 2, 3]


def test_queue_counter_seeds_from_existing_orders_of_the_day(engine):
    day = "2026-01-05"
    with Session(engine) as s:
        s.add(Order(order_id="ORD-legacy", business_day=day, queue_position=5, items_json="[]"))
        s.commit()
        assert lifecycle.next_queue_position(s, day) == 6
        assert lifecycle.next_queue_position(s, day) == 7
        assert lifecycle.next_queue_position(s, "2026-01-06") == 1
        s.commit()


@pytest.mark.parametrize(
    "raw,expected",
    [(None, None), ("", None), (0, None), (3, 3), ("4", 4), (99, 6), (-2, 1), (2.7, 2)],
)
def test_table_number_is_clamped(raw, expected):
    assert lifecycle.clamp_table_number(raw) == expected


def test_non_numeric_table_number_is_rejected():
    with pytest.raises(ValidationError):
        lifecycle.clamp_table_number("window seat")


def test_guest_email_links_one_customer_row(engine, notifier, seed_menu):
    seed_menu(stock=10_000)
    with Session(engine) as s:
        a = lifecycle.place_order(s, notifier, _burger_order(customer_email="Ana@Example.com"))
        b = lifecycle.place_order(s, notifier, _burger_order(customer_email="ana@example.com"))
        customers = s.execute(select(Customer)).scalars().all()
        assert len(customers) == 1
        assert customers[0].email == "ana@example.com"
        assert customers[0].is_guest is True
        assert a.customer_id == b.customer_id == customers[0].id
    assert "customer-ana@example.com" in notifier.rooms("order-updated")


def test_checkout_endpoint(client, seed_menu):
    seed_menu()
    r = client.post(
        "/guest/checkout",
        json={
            "customerName": "Ana",
            "items": [{"name": "Burger", "quantity": 2, "price": 150}],
            "totalAmount": 300,
            "paymentMethod": "cash",
            "tableNumber": 2,
        },
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["message"] == "Guest order placed successfully"
    assert body["status"] == "pending_verification"
    assert body["tableNumber"] == 2

    r2 = client.get(f"/guest/order-status/{body['orderId']}")
    assert r2.status_code == 200
    assert r2.json()["order"]["items"][0]["name"] == "Burger"


def test_checkout_endpoint_reports_fulfillment_details(client, seed_menu):
    seed_menu(stock=10)
    r = client.post(
        "/guest/checkout",
        json={"customerName": "Ana", "items": [{"name": "Burger", "quantity": 1, "price": 150}], "totalAmount": 150},
    )
    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert "insufficient inventory" in body["error"]
    assert body["fulfillment_details"]["canFulfillOrder"] is False


def test_unknown_order_status_is_404(client):
    r = client.get("/guest/order-status/ORD-missing")
    assert r.status_code == 404
    assert r.json() == {"success": False, "error": "Order not found"}


def test_menu_lists_visible_items(client, seed_menu):
    seed_menu()
    r = client.get("/guest/menu")
    assert r.status_code == 200
    assert [m["name"] for m in r.json()["menu_items"]] == ["Burger"]
