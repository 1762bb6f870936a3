from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ambulance_dispatch.api.routes import router as api_router
from ambulance_dispatch.core.config import get_settings
from ambulance_dispatch.core.logging import setup_logging
from ambulance_dispatch.services.db import init_db
from ambulance_dispatch.services.dispatch import get_coordinator
from ambulance_dispatch.services.jobs import get_scheduler

settings = get_settings()
setup_logging(settings.logging.level)

app = FastAPI(title="Ambulance Dispatch Engine", version="0.1.0")

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def on_startup() -> None:
    init_db()
    get_coordinator().resume_in_flight()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    get_scheduler().shutdown(wait=False)


def run() -> None:
    import uvicorn

    uvicorn.run("ambulance_dispatch.main:app", host=settings.host, port=settings.port)
