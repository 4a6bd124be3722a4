"""
Shared helpers for the gateway test suite.
"""

import asyncio
import socket
from typing import Callable, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

from config.config import GatewayConfig, validate

BASE_ENTRIES: Dict[str, str] = {
    "InputUdpPort": "0",
    "MqttUrl": "tcp://localhost:1883",
    "MqttTopic": "sensors/1",
    "MqttClientID": "udpmqttgw-test",
    "MqttQosLevel": "0",
    "StatsInterval": "0",
}


def make_config(**overrides: str) -> GatewayConfig:
    """Build a validated config from the base entries plus overrides."""
    entries = dict(BASE_ENTRIES)
    entries.update(overrides)
    return validate(entries)


def make_client_mock() -> MagicMock:
    """A stand-in for `aiomqtt.Client` usable as an async context manager."""
    client = MagicMock()
    client.__aenter__.return_value = client
    client.__aexit__.return_value = None
    client.publish = AsyncMock()
    return client


def send_datagram(payload: bytes, port: int, host: str = "127.0.0.1") -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.sendto(payload, (host, port))


async def wait_until(
    predicate: Callable[[], bool], timeout: float = 2.0, message: Optional[str] = None
) -> None:
    """Poll `predicate` until it holds or `timeout` seconds have passed."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(message or "condition not met in time")
        await asyncio.sleep(0.01)
