"""
RetroChat - Transport backends.

Backends are selected by name at session start. Each one is imported
lazily so that, for example, the relay backend does not pull in aiortc.
"""

import importlib
from typing import Callable, Dict, Tuple

from ..config import Config
from ..constants import BACKEND_MESH, BACKEND_RELAY, BACKEND_SIGNALING
from ..errors import ErrorCode, TransportConnectError
from .base import SessionRole, TransportAdapter, TransportErrorKind

AdapterFactory = Callable[[str, str], TransportAdapter]

BACKENDS: Dict[str, Tuple[str, str]] = {
    BACKEND_RELAY: ("retrochat.transports.relay", "RelayTransport"),
    BACKEND_SIGNALING: ("retrochat.transports.signaling", "SignalingTransport"),
    BACKEND_MESH: ("retrochat.transports.mesh", "MeshTransport"),
}


def get_backend_class(backend: str) -> type:
    """Import and return the adapter class registered for a backend name."""
    if backend not in BACKENDS:
        raise TransportConnectError(
            ErrorCode.E305_UNKNOWN_BACKEND,
            f"Unknown transport backend: {backend}",
            {"backend": backend, "choices": sorted(BACKENDS)},
        )
    module_name, class_name = BACKENDS[backend]
    return getattr(importlib.import_module(module_name), class_name)


def create_adapter_factory(backend: str, config: Config) -> AdapterFactory:
    """
    Build the factory the transport manager uses for each candidate.

    Args:
        backend: Backend name (relay, signaling or mesh)
        config: Loaded configuration supplying backend options

    Returns:
        Callable taking (endpoint, local_id) and returning a fresh adapter
    """
    adapter_class = get_backend_class(backend)
    ice_servers = config.get("webrtc", "ice_servers")

    if backend == BACKEND_RELAY:
        options = {
            "topic_prefix": config.get("relay", "topic_prefix"),
            "keepalive": config.get("relay", "keepalive"),
        }
    elif backend == BACKEND_SIGNALING:
        options = {
            "ice_servers": ice_servers,
            "key": config.get("signaling", "key"),
            "heartbeat_interval": config.get("signaling", "heartbeat_interval"),
        }
    else:
        options = {
            "ice_servers": ice_servers,
            "offer_pool_size": config.get("mesh", "offer_pool_size"),
            "announce_interval": config.get("mesh", "announce_interval"),
            "max_peers": config.get("mesh", "max_peers"),
        }

    def factory(endpoint: str, local_id: str) -> TransportAdapter:
        return adapter_class(endpoint, local_id, **options)

    return factory


__all__ = [
    "AdapterFactory",
    "BACKENDS",
    "SessionRole",
    "TransportAdapter",
    "TransportErrorKind",
    "create_adapter_factory",
    "get_backend_class",
]
