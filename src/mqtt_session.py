"""
MQTT Session

This module wraps `aiomqtt` (which wraps `paho-mqtt`) into the single broker
session the gateway publishes through.

## Features

*   **Explicit lifecycle:** `connect()` / `disconnect()` drive the client's
    async context manager through an `AsyncExitStack`, so the session can be
    opened at startup and released from a `finally` block at shutdown.
*   **Publish with acknowledgement:** `publish()` waits up to the connection
    timeout for the QoS-appropriate acknowledgement (local send for QoS 0).
*   **Reconnection:** aiomqtt does not reconnect by itself. When the client
    reports a lost connection the session is marked failed, and the next
    publish attempts a reconnect, at most once per retry interval.
*   **Security:** username/password from `SecretStr`, TLS from an
    `ssl.SSLContext` built out of the TLS options.

## States

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED (graceful)
                                            -> FAILED (connect error / connection lost)
"""

import logging
import ssl
import time
from contextlib import AsyncExitStack
from enum import Enum
from typing import Any, Dict, Optional

import aiomqtt
import paho.mqtt.client as paho

from config.config import GatewayConfig, TlsConfig
from errors import MqttConnectionError, PublishError
from utils import sanitize_for_log

UNKNOWN_REASON = "Unknown error code"

_PROTOCOL_VERSIONS: Dict[str, Optional[aiomqtt.ProtocolVersion]] = {
    "default": None,
    "3.1": aiomqtt.ProtocolVersion.V31,
    "3.1.1": aiomqtt.ProtocolVersion.V311,
    "5": aiomqtt.ProtocolVersion.V5,
}

_TLS_VERSIONS: Dict[str, Optional[ssl.TLSVersion]] = {
    "default": None,
    "1.0": ssl.TLSVersion.TLSv1,
    "1.1": ssl.TLSVersion.TLSv1_1,
    "1.2": ssl.TLSVersion.TLSv1_2,
}

# CONNACK return codes (MQTT 3.1/3.1.1) and the MQTT 5 reason codes paho
# converts them to.
_CONNACK_REASONS: Dict[int, str] = {
    1: "Unacceptable protocol version",
    2: "Identifier rejected",
    3: "Server unavailable",
    4: "Bad user name or password",
    5: "Not authorized",
    0x84: "Unacceptable protocol version",
    0x85: "Identifier rejected",
    0x86: "Bad user name or password",
    0x87: "Not authorized",
    0x88: "Server unavailable",
    0x89: "Server unavailable",
}

_CONNECTION_LOST_CODES = (paho.MQTT_ERR_NO_CONN, paho.MQTT_ERR_CONN_LOST)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


def _code_value(rc: Any) -> Optional[int]:
    """Extract the integer code from an int, an IntEnum or a paho ReasonCode."""
    if rc is None:
        return None
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return None


def connack_reason(rc: Any) -> str:
    """Describe a broker connection refusal code."""
    code = _code_value(rc)
    if code is None:
        return UNKNOWN_REASON
    return _CONNACK_REASONS.get(code, UNKNOWN_REASON)


def build_tls_context(tls: TlsConfig) -> ssl.SSLContext:
    """
    Build the client SSL context from the TLS options.

    *   `enable_server_cert_auth` off disables certificate verification entirely.
    *   `verify` enables host name verification of the server certificate.
    *   `tls_version` pins the protocol to exactly that version.
    *   `key_store_path` is a PEM client certificate chain, optionally with the
        private key; `private_key_path` is the key when stored separately.
    """
    context = ssl.create_default_context(cafile=tls.trust_store_path)

    if tls.enable_server_cert_auth:
        context.check_hostname = tls.verify
    else:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    version = _TLS_VERSIONS[tls.tls_version]
    if version is not None:
        context.minimum_version = version
        context.maximum_version = version

    if tls.key_store_path:
        password = (
            tls.private_key_password.get_secret_value()
            if tls.private_key_password
            else None
        )
        context.load_cert_chain(
            certfile=tls.key_store_path,
            keyfile=tls.private_key_path,
            password=password,
        )

    return context


class MqttSession:
    """
    Owns the broker connection the gateway publishes through.
    """

    def __init__(self, config: GatewayConfig) -> None:
        """
        Initialize the session. No network activity happens here.

        Args:
            config: Validated gateway configuration.
        """
        self.config = config
        self.broker = config.broker
        self.state = SessionState.DISCONNECTED
        self.client: Optional[aiomqtt.Client] = None
        self._stack: Optional[AsyncExitStack] = None
        self._last_connect_attempt: Optional[float] = None
        self.logger = logging.getLogger(__name__)

        tls = self.config.tls
        tls_paths = (tls.trust_store_path, tls.key_store_path, tls.private_key_path)
        if not self.broker.use_tls and any(tls_paths):
            self.logger.warning(
                f"TLS options are ignored for non-TLS broker URL "
                f"{sanitize_for_log(self.config.mqtt_url)}"
            )

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    @property
    def timeout(self) -> float:
        return self.config.connect_timeout

    def _build_client(self) -> aiomqtt.Client:
        config = self.config
        protocol = _PROTOCOL_VERSIONS[config.mqtt_protocol_version]

        kwargs: Dict[str, Any] = {
            "hostname": self.broker.hostname,
            "port": self.broker.port,
            "identifier": config.mqtt_client_id,
            "keepalive": config.mqtt_keep_alive_seconds,
            "timeout": self.timeout,
            "transport": self.broker.transport,
        }
        if protocol is not None:
            kwargs["protocol"] = protocol

        # MQTT 5 replaced "clean session" with "clean start"
        if protocol is aiomqtt.ProtocolVersion.V5:
            kwargs["clean_start"] = True
        else:
            kwargs["clean_session"] = True

        if config.mqtt_username:
            kwargs["username"] = config.mqtt_username
            if config.mqtt_password is not None:
                kwargs["password"] = config.mqtt_password.get_secret_value()

        if self.broker.path:
            kwargs["websocket_path"] = self.broker.path

        if self.broker.use_tls:
            kwargs["tls_context"] = build_tls_context(config.tls)

        return aiomqtt.Client(**kwargs)

    async def connect(self) -> None:
        """
        Establish the broker session.

        Resolves once the broker acknowledged the connection or the connect
        timeout elapsed.

        Raises:
            MqttConnectionError: with the broker-reported reason on failure.
        """
        if self.state is SessionState.CONNECTED:
            return

        self.state = SessionState.CONNECTING
        self._last_connect_attempt = time.monotonic()
        self.logger.info(
            f"Connecting to MQTT broker at "
            f"{sanitize_for_log(self.broker.hostname)}:{self.broker.port}"
        )

        stack = AsyncExitStack()
        try:
            self.client = await stack.enter_async_context(self._build_client())
        except aiomqtt.MqttCodeError as e:
            self._fail()
            raise MqttConnectionError(_code_value(e.rc), connack_reason(e.rc)) from e
        except aiomqtt.MqttError as e:
            self._fail()
            raise MqttConnectionError(None, str(e) or UNKNOWN_REASON) from e
        except (OSError, ValueError) as e:
            # Bad TLS material or client options
            self._fail()
            raise MqttConnectionError(None, str(e)) from e

        self._stack = stack
        self.state = SessionState.CONNECTED
        self.logger.info("Successfully connected to MQTT broker")

    def _fail(self) -> None:
        self.state = SessionState.FAILED
        self.client = None

    async def publish(self, topic: str, payload: bytes, qos: int) -> None:
        """
        Publish one non-retained message and wait for its acknowledgement.

        Raises:
            PublishError: on failure or acknowledgement timeout. The message is
            not retried or queued.
        """
        if self.state is SessionState.FAILED:
            await self._reconnect()

        if self.client is None or self.state is not SessionState.CONNECTED:
            raise PublishError(
                _code_value(paho.MQTT_ERR_NO_CONN), "MQTT session is not connected"
            )

        try:
            await self.client.publish(
                topic, payload=payload, qos=qos, retain=False, timeout=self.timeout
            )
        except aiomqtt.MqttCodeError as e:
            if e.rc in _CONNECTION_LOST_CODES:
                self.logger.warning("Lost connection to MQTT broker")
                self.state = SessionState.FAILED
            raise PublishError(_code_value(e.rc), str(e)) from e
        except aiomqtt.MqttError as e:
            raise PublishError(None, str(e)) from e
        except ValueError as e:
            # paho rejects invalid topics and payloads before sending
            raise PublishError(None, str(e)) from e

    async def _reconnect(self) -> None:
        """Try to re-establish a lost session, rate limited by the retry interval."""
        if self._last_connect_attempt is not None:
            elapsed_ms = (time.monotonic() - self._last_connect_attempt) * 1000
            if elapsed_ms < self.config.mqtt_retry_interval_ms:
                raise PublishError(
                    _code_value(paho.MQTT_ERR_NO_CONN),
                    "MQTT connection lost, waiting for retry interval",
                )

        await self._release()
        try:
            await self.connect()
        except MqttConnectionError as e:
            raise PublishError(e.rc, f"Reconnect failed: {e.reason}") from e

    async def _release(self) -> None:
        stack, self._stack = self._stack, None
        self.client = None
        if stack is None:
            return
        try:
            await stack.aclose()
        except aiomqtt.MqttError as e:
            self.logger.warning(f"Error while closing MQTT connection: {e}")

    async def disconnect(self) -> None:
        """Release the broker connection. Safe to call more than once."""
        was_open = self._stack is not None
        await self._release()
        self.state = SessionState.DISCONNECTED
        if was_open:
            self.logger.info("Disconnected from MQTT broker")

    async def __aenter__(self) -> "MqttSession":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.disconnect()
