from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware

# Vite dev server used by the ordering kiosk and the staff dashboard.
_DEV_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173"]


def configure_cors(app, allowed: str | None):
    origins = [o.strip().rstrip("/") for o in (allowed or "").split(",") if o.strip()]
    if not origins:
        origins = list(_DEV_ORIGINS)

    # Browsers reject credentialed requests against a wildcard origin.
    wildcard = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if wildcard else origins,
        allow_credentials=not wildcard,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
