"""Adapters package - bridge between providers and connected clients.

Normalised provider events and the per-connection outbound queues that
carry them to websocket clients or headless task runs.
"""
from __future__ import annotations

__all__ = [
    "ClientConnection",
    "ClientSink",
    "HeadlessSink",
    "LlmEvent",
    "event_to_dict",
    "dict_to_event",
]

from eve.adapters.client_queue import ClientConnection, ClientSink, HeadlessSink
from eve.adapters.events import LlmEvent, dict_to_event, event_to_dict
