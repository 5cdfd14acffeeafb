from .engine import CloseReason, Tunnel, TunnelEngine, TunnelState
from .targets import WsTarget, WsTargetTable, default_ws_targets
from .upstream import UpstreamSocket, open_upstream

__all__ = [
    "CloseReason",
    "Tunnel",
    "TunnelEngine",
    "TunnelState",
    "UpstreamSocket",
    "WsTarget",
    "WsTargetTable",
    "default_ws_targets",
    "open_upstream",
]
