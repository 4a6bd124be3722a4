"""
Main Gateway Application Logic

This module contains the `GatewayApp` class, which wires the gateway runtime
together and owns its lifecycle.

## Architecture

The application runs on a single asyncio event loop. The MQTT client library
performs its network activity on the same loop; the gateway itself never
runs more than one forward task.

### Core Components
1.  **MqttSession (`aiomqtt`):** The broker connection, established first.
    Startup fails if the broker cannot be reached.
2.  **UdpListener:** The bound UDP socket. Startup fails if the port cannot
    be bound.
3.  **ForwardLoop:** Receives datagrams and publishes them through the
    session.

### Shutdown
SIGINT/SIGTERM set `stop_event`. `start()` then cancels the forward task,
abandoning any in-flight receive or publish, and `stop()` releases the socket
and the broker connection.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from config.config import GatewayConfig
from forward_loop import ForwardLoop
from mqtt_session import MqttSession
from udp_listener import UdpListener

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class GatewayApp:
    """
    Application orchestrator.

    Lifecycle:
    1.  `__init__`: Stores the validated configuration.
    2.  `initialize`: Connects the MQTT session and binds the UDP socket.
    3.  `start`: Main entry point. Runs the forward loop until `stop_event`.
    4.  `stop`: Releases the socket and the broker connection.
    """

    def __init__(self, config: GatewayConfig) -> None:
        self.config = config
        self.session: Optional[MqttSession] = None
        self.listener: Optional[UdpListener] = None
        self.forward_loop: Optional[ForwardLoop] = None
        self.stop_event: Optional[asyncio.Event] = None
        self._signals_installed: List[signal.Signals] = []
        self.logger = logging.getLogger(__name__)

    def request_stop(self) -> None:
        """Ask the gateway to shut down. Safe to call from a signal handler."""
        if self.stop_event is not None and not self.stop_event.is_set():
            self.logger.info("Shutdown requested")
            self.stop_event.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform; KeyboardInterrupt still applies
                self.logger.debug(f"Cannot install handler for {sig.name}")
                continue
            self._signals_installed.append(sig)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        while self._signals_installed:
            loop.remove_signal_handler(self._signals_installed.pop())

    async def initialize(self) -> None:
        """
        Bring up the runtime components.

        Nothing is bound if a shutdown was requested while connecting.

        Raises:
            MqttConnectionError: if the broker session cannot be established.
            BindError: if the UDP port cannot be bound.
        """
        if self.stop_event is None:
            self.stop_event = asyncio.Event()

        self.session = MqttSession(self.config)
        await self.session.connect()

        if self.stop_event.is_set():
            self.logger.info("Shutdown requested during startup")
            return

        self.listener = UdpListener()
        self.listener.bind(self.config.input_udp_port)

        self.forward_loop = ForwardLoop(
            self.listener,
            self.session,
            self.config.mqtt_topic,
            self.config.mqtt_qos,
            stop_event=self.stop_event,
        )
        self.logger.info("Application initialized successfully")

    async def start(self) -> None:
        """
        Run the gateway until a shutdown is requested.

        Startup errors propagate to the caller after resources are released.
        """
        self.stop_event = asyncio.Event()
        # A signal during the connect wait also stops the gateway
        self.install_signal_handlers()
        try:
            await self.initialize()
            if self.stop_event.is_set():
                return
            if self.forward_loop is None:
                raise RuntimeError("GatewayApp not initialized")

            self.logger.info("Gateway service started successfully")

            forward_task = asyncio.create_task(self.forward_loop.run())
            stop_task = asyncio.create_task(self.stop_event.wait())
            stats_task = asyncio.create_task(self._stats_loop())

            tasks = (forward_task, stop_task, stats_task)
            try:
                done, _ = await asyncio.wait(
                    {forward_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)

            # A socket failure inside the forward loop is fatal
            if forward_task in done and not forward_task.cancelled():
                exc = forward_task.exception()
                if exc is not None:
                    raise exc
        finally:
            await self.stop()

    async def _stats_loop(self) -> None:
        """Log statistics every `stats_interval_seconds`."""
        interval = self.config.stats_interval_seconds
        if interval <= 0:
            return
        while self.stop_event and not self.stop_event.is_set():
            await asyncio.sleep(interval)
            if self.forward_loop is not None:
                self.forward_loop.log_statistics()

    async def stop(self) -> None:
        """
        Stop the gateway service.
        Closes the UDP socket and the broker connection.
        """
        self.logger.info("Stopping gateway service...")
        if self.stop_event:
            self.stop_event.set()

        self.remove_signal_handlers()

        if self.listener is not None:
            self.listener.close()

        if self.session is not None:
            await self.session.disconnect()

        if self.forward_loop is not None:
            self.forward_loop.log_statistics()
        self.logger.info("Gateway service stopped")
