from fastapi import APIRouter, WebSocket

router = APIRouter()


@router.websocket("/{path:path}")
async def tunnel_all(websocket: WebSocket, path: str):
    """Relay a WebSocket upgrade to its upstream stream, or reject it."""
    engine = websocket.app.state.tunnel_engine
    await engine.serve(websocket, websocket.url.path, websocket.url.query)
