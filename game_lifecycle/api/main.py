from __future__ import annotations

from fastapi import FastAPI

from .middleware import StructuredLoggingMiddleware
from .routers import admin, lifecycle

app = FastAPI(title="game-lifecycle", version="1.0.0")

app.add_middleware(StructuredLoggingMiddleware)

app.include_router(lifecycle.router)
app.include_router(admin.router)


@app.get("/healthz")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
