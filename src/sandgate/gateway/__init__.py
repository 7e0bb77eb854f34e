"""Remote agent gateway.

Key exports:
    GatewayProtocolClient -- WebSocket handshake, request/response, push events
    GatewayExecutionBridge -- one agent turn as an AiEvent stream
"""

from sandgate.gateway.bridge import GatewayExecutionBridge
from sandgate.gateway.client import AgentAck, ClientState, GatewayProtocolClient
from sandgate.gateway.frames import EventFrame, RequestFrame, ResponseFrame, parse_frame

__all__ = [
    "AgentAck",
    "ClientState",
    "EventFrame",
    "GatewayExecutionBridge",
    "GatewayProtocolClient",
    "RequestFrame",
    "ResponseFrame",
    "parse_frame",
]
