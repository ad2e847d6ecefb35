"""Protocol layer: HTTP transport, failure classification and API operations."""

from .endpoints import EndpointClass, Operation
from .protocol import ProtocolClient
from .transport import Transport, TransportRequest, TransportResponse

__all__ = [
    "EndpointClass",
    "Operation",
    "ProtocolClient",
    "Transport",
    "TransportRequest",
    "TransportResponse",
]
