import os
import sqlite3
import subprocess
import sys
import tempfile


def test_orders_alembic_upgrade_sqlite_uses_current_timestamp_default():
    """
    Migrations must run on SQLite and must not use Postgres-only defaults
    like NOW().
    """
    with tempfile.TemporaryDirectory() as td:
        db_path = os.path.join(td, "orders.db")
        db_url = f"sqlite+pysqlite:///{db_path}"

        env = os.environ.copy()
        env.pop("DB_SCHEMA", None)
        env.update({"ENV": "test", "ORDERS_DB_URL": db_url})

        # Subprocess so Alembic's fileConfig does not reset pytest's log handlers.
        repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
        proc = subprocess.run(
            [sys.executable, "-m", "alembic", "-c", "apps/orders/alembic.ini", "upgrade", "head"],
            cwd=repo_root,
            env=env,
            text=True,
            capture_output=True,
        )
        assert proc.returncode == 0, f"alembic failed: {proc.stderr.strip()}"

        con = sqlite3.connect(db_path)
        try:
            for table in ("orders", "payment_transactions", "loyalty_transactions"):
                row = con.execute(
                    "SELECT sql FROM sqlite_master WHERE type='table' AND name=?",
                    (table,),
                ).fetchone()
                assert row and row[0]
                ddl = row[0].upper()
                assert "NOW()" not in ddl
                assert "CURRENT_TIMESTAMP" in ddl
            tables = {r[0] for r in con.execute("SELECT name FROM sqlite_master WHERE type='table'")}
            assert {"queue_counters", "menu_item_ingredients", "activity_logs"} <= tables
        finally:
            con.close()
