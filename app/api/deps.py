from fastapi import Request, WebSocket

from app.services.realtime_hub import RealtimeHub


def get_realtime_hub(request: Request) -> RealtimeHub:
    return request.app.state.realtime


def get_websocket_hub(websocket: WebSocket) -> RealtimeHub:
    return websocket.app.state.realtime
