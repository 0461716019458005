import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "apps.orders.app.main:app",
        host=os.getenv("ORDERS_HOST", "0.0.0.0"),
        port=int(os.getenv("ORDERS_PORT", "5001")),
        reload=os.getenv("ORDERS_RELOAD", "false").lower() == "true",
    )


if __name__ == "__main__":
    main()
