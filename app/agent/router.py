from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

from app.agent.websocket_handler import websocket_endpoint


agentRouter = APIRouter()


@agentRouter.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    services = request.app.state.services
    return {
        "status": "healthy",
        "message": "LLM chat relay is running",
        "model": services.inference.model_name,
        "sessions": services.connections.snapshot(),
    }


@agentRouter.get("/metrics")
async def metrics(request: Request):
    """Prometheus scrape endpoint."""
    return Response(request.app.state.services.metrics.render(), media_type=CONTENT_TYPE_LATEST)


@agentRouter.websocket("/ws")
async def wsp(websocket: WebSocket):
    await websocket_endpoint(websocket=websocket, services=websocket.app.state.services)
