"""Channel transports: WhatsApp for users, WebSocket observers for dashboards."""
from channels.base import ChannelTransport, TransportMetrics
from channels.whatsapp_adapter import WhatsAppTransport
from channels.observer_adapter import ObserverHub, ObserverConnection

__all__ = [
    "ChannelTransport", "TransportMetrics",
    "WhatsAppTransport",
    "ObserverHub", "ObserverConnection",
]
