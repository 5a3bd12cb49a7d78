"""Console entry points that run the inventory and payments services under uvicorn."""

import os

import uvicorn


def _run(app: str, default_port: int) -> None:
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", str(default_port))),
        workers=int(os.getenv("UVICORN_WORKERS", str(max(2, (os.cpu_count() or 1))))),
        loop="uvloop",  # requires uvicorn[standard]
        http="h11",
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


def inventory():
    _run("services.inventory.main:app", 9001)


def payments():
    _run("services.payments.main:app", 9002)
