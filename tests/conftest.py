from __future__ import annotations

import os
import tempfile
import threading
from typing import Any, Dict, List, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

_TMP = tempfile.mkdtemp(prefix="orders-tests-")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("ORDERS_DB_URL", f"sqlite+pysqlite:///{os.path.join(_TMP, 'orders.db')}")
os.environ.setdefault("RECEIPTS_DIR", os.path.join(_TMP, "receipts"))
os.environ.setdefault("EVENTS_ENABLED", "false")

from apps.orders.app import settings  # noqa: E402
from apps.orders.app.db import Base, Ingredient, MenuItem, MenuItemIngredient, get_session  # noqa: E402
from apps.orders.app.notify import get_notifier  # noqa: E402
from apps.orders.app.providers import WalletProvider  # noqa: E402

GCASH_SECRET = "gcash-test-secret"
PAYMAYA_SECRET = "paymaya-test-secret"


class RecordingNotifier:
    """Collects (room, event, data) tuples instead of pushing to sockets."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def emit(self, room: str, event: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((room, event, data))

    def rooms(self, event: str) -> List[str]:
        return [r for r, e, _ in self.events if e == event]


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def engine():
    """
    Isolated in-memory SQLite engine. StaticPool keeps a single connection so
    TestClient worker threads see the same database.
    """
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def receipts_dir(tmp_path, monkeypatch):
    d = tmp_path / "receipts"
    monkeypatch.setattr(settings, "RECEIPTS_DIR", str(d))
    return d


@pytest.fixture()
def providers() -> Dict[str, WalletProvider]:
    return {
        "gcash": WalletProvider(name="gcash", api_url="http://gcash.invalid", webhook_secret=GCASH_SECRET,
                                color="#006F42"),
        "paymaya": WalletProvider(name="paymaya", api_url="http://paymaya.invalid", webhook_secret=PAYMAYA_SECRET,
                                  color="#00A3E0"),
    }


@pytest.fixture()
def seed_menu(engine):
    """
    Returns a callable that creates a Burger (150 g beef per burger) with the
    given beef stock and returns the menu item id.
    """

    def _seed(stock: float = 1000.0, threshold: float | None = None) -> int:
        with Session(engine) as s:
            beef = Ingredient(name="Beef patty", actual_quantity=stock, actual_unit="g", low_stock_threshold=threshold)
            burger = MenuItem(name="Burger", category="Mains", price=150.0)
            s.add_all([beef, burger])
            s.flush()
            s.add(MenuItemIngredient(menu_item_id=burger.id, ingredient_id=beef.id,
                                     required_display_amount=150.0, recipe_unit="g"))
            s.commit()
            return burger.id

    return _seed


@pytest.fixture()
def app(engine, notifier, providers):
    from apps.orders.app.main import app as orders_app

    def _session():
        with Session(engine) as s:
            yield s

    saved = orders_app.state.providers
    orders_app.dependency_overrides[get_session] = _session
    orders_app.dependency_overrides[get_notifier] = lambda: notifier
    orders_app.state.providers = providers
    yield orders_app
    orders_app.dependency_overrides.clear()
    orders_app.state.providers = saved


@pytest.fixture()
def client(app):
    return TestClient(app)
