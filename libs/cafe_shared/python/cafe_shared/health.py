import os
from datetime import datetime, timezone

from fastapi import FastAPI


def add_standard_health(app: FastAPI, env_key: str = "ENV"):
    started_at = datetime.now(timezone.utc).isoformat()

    @app.get("/health")
    def _health():
        return {
            "status": "ok",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
            "started_at": started_at,
        }
