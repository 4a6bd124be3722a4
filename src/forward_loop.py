"""
Forward Loop

The single control loop coupling the UDP listener and the MQTT session:

    receive datagram -> publish -> wait for acknowledgement -> repeat

Datagrams are forwarded strictly in arrival order with at most one message
in flight. A failed publish is logged and the datagram dropped; the loop
keeps going. Only the stop signal or cancellation of the task ends it.
"""

import asyncio
import logging
import time
from typing import Dict, Optional, Union

from errors import PublishError
from mqtt_session import MqttSession
from udp_listener import Datagram, UdpListener
from utils import format_payload_preview, sanitize_for_log


class ForwardLoop:
    """
    Forwards every received datagram, unmodified, to one MQTT topic.
    """

    def __init__(
        self,
        listener: UdpListener,
        session: MqttSession,
        topic: str,
        qos: int = 0,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.listener = listener
        self.session = session
        self.topic = topic
        self.qos = qos
        self.stop_event = stop_event
        self.logger = logging.getLogger(__name__)

        self.stats: Dict[str, Union[int, float]] = {
            "datagrams_received": 0,
            "messages_published": 0,
            "publish_errors": 0,
            "bytes_forwarded": 0,
            "start_time": 0.0,
        }

    def _stop_requested(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    async def run(self) -> None:
        """
        Receive and forward until the stop signal is set.

        The signal is checked before every receive and again when a receive
        returns; a datagram received after the signal is not forwarded.
        """
        self.stats["start_time"] = time.time()
        self.logger.info(
            f"Forwarding UDP datagrams to MQTT topic {sanitize_for_log(self.topic)}"
        )

        while not self._stop_requested():
            datagram = await self.listener.receive()
            if self._stop_requested():
                self.logger.debug("Stop requested, dropping received datagram")
                break
            await self.forward(datagram)

        self.logger.info("Forward loop stopped")

    async def forward(self, datagram: Datagram) -> bool:
        """
        Publish one datagram.

        Returns:
            bool: True if the broker acknowledged the message, False if it was
            dropped.
        """
        self.stats["datagrams_received"] += 1
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(
                f"Got a new message from {sanitize_for_log(datagram.sender[0])}:"
                f"{datagram.sender[1]} ({datagram.length} bytes): "
                f"{format_payload_preview(datagram.payload)}"
            )

        try:
            await self.session.publish(self.topic, datagram.payload, self.qos)
        except PublishError as e:
            self.stats["publish_errors"] += 1
            self.logger.error(f"{e}. Dropping {datagram.length} byte datagram")
            return False
        except Exception as e:
            self.stats["publish_errors"] += 1
            self.logger.error(
                f"Unexpected error publishing message: {e}. "
                f"Dropping {datagram.length} byte datagram"
            )
            return False

        self.stats["messages_published"] += 1
        self.stats["bytes_forwarded"] += datagram.length
        self.logger.debug("Successfully published message to MQTT")
        return True

    def log_statistics(self) -> None:
        """Log current statistics for health monitoring."""
        if not self.stats["start_time"]:
            return

        uptime = time.time() - self.stats["start_time"]
        self.logger.info(
            f"Statistics - Uptime: {uptime:.0f}s, "
            f"Datagrams received: {self.stats['datagrams_received']}, "
            f"Messages published: {self.stats['messages_published']}, "
            f"Publish errors: {self.stats['publish_errors']}, "
            f"Bytes forwarded: {self.stats['bytes_forwarded']}"
        )
