from fastapi import FastAPI
from outreach.logging_config import configure_logging
from outreach.routers import jobs, websocket, health

configure_logging()

app = FastAPI(title="Outreach Call Gateway")

app.include_router(jobs.router, prefix="/api/v1")
app.include_router(websocket.router)
app.include_router(health.router, prefix="/api/v1")
