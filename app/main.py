from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.config import settings
from app.core.logging import setup_logging
from app.core.services import shutdown_services, wire_services
from app.db.session import Base, SessionLocal, engine
from app.db import models  # noqa: F401  (registers tables on Base)

from app.api.auth.routes import router as auth_router
from app.api.chat.routes import router as chat_router
from app.agent.router import agentRouter

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    wire_services(app, settings, SessionLocal)
    yield
    await shutdown_services(app)

app = FastAPI(title="llm-chat-relay", lifespan=lifespan)

# Routers
app.include_router(auth_router, prefix="/auth", tags=["Auth"])
app.include_router(chat_router, prefix="/chat", tags=["Chat"])
app.include_router(agentRouter, tags=["Relay"])


@app.get("/ping")
def ping():
    return {"message": "pong"}
