import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from automations.api import automations
from automations.core import database
from automations.core.config import settings
from automations.core.store import PersistentStore
from automations.services.dispatcher import QuickAgentDispatcher
from automations.services.scheduler.scheduler import AutomationScheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure logging based on debug setting
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s" if settings.debug
        else "%(levelname)-8s %(name)s: %(message)s",
    )

    database.init_db()

    # The scheduler owns the pending-run table and refresh broadcaster
    scheduler = AutomationScheduler(PersistentStore(database.engine), QuickAgentDispatcher())
    app.state.scheduler = scheduler
    await scheduler.start()

    yield

    # Stops ticking; agent runs already dispatched finish in the background
    await scheduler.stop()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(automations.router, prefix="/api/automations", tags=["automations"])


@app.get("/api/health")
async def health():
    return {"status": "ok", "app": settings.app_name}
