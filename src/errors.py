"""
Gateway Error Taxonomy

All failures raised by the gateway runtime derive from `GatewayError`.
Low-level components raise; only the entry point (`gateway.main`) turns an
error into a process exit status.

*   **ConfigError** and subclasses: invalid configuration. Fatal at startup.
*   **BindError**: the UDP port could not be bound. Fatal at startup.
*   **MqttConnectionError**: the broker could not be reached or rejected the
    session. Fatal at startup.
*   **PublishError**: a single message could not be delivered. Recoverable.
"""

from typing import Any, Iterable, Optional


class GatewayError(Exception):
    """Base class for all gateway errors."""


class ConfigError(GatewayError):
    """Configuration could not be loaded or is invalid."""


class ConfigSyntaxError(ConfigError):
    """A non-blank configuration line is not a `Key Value` pair."""

    def __init__(self, line: int, text: str) -> None:
        self.line = line
        self.text = text
        super().__init__(f"Invalid parameter in config file at line {line}")


class MissingRequiredField(ConfigError):
    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"{key} must be set in the configuration file")


class InconsistentCredentials(ConfigError):
    def __init__(self) -> None:
        super().__init__("MqttPassword must be set when a username is given")


class InvalidEnumValue(ConfigError):
    def __init__(self, key: str, value: Any, allowed: Iterable[Any] = ()) -> None:
        self.key = key
        self.value = value
        self.allowed = tuple(allowed)
        message = f"Invalid value for {key}: {value!r}"
        if self.allowed:
            message += f" (expected one of: {', '.join(str(a) for a in self.allowed)})"
        super().__init__(message)


class MalformedValue(ConfigError):
    """A value that must be an integer could not be parsed."""

    def __init__(self, key: str, value: str, line: Optional[int] = None) -> None:
        self.key = key
        self.value = value
        self.line = line
        where = f" at line {line}" if line is not None else ""
        super().__init__(f"Malformed value for {key}{where}: {value!r}")


class InvalidValue(ConfigError):
    """A value parsed correctly but lies outside its permitted range."""

    def __init__(self, key: str, value: Any, reason: str) -> None:
        self.key = key
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid value for {key}: {value!r} ({reason})")


class BindError(GatewayError):
    def __init__(self, port: int, reason: str) -> None:
        self.port = port
        self.reason = reason
        super().__init__(f"Could not bind UDP socket to port {port}: {reason}")


class MqttConnectionError(GatewayError):
    """
    The broker connection could not be established.

    `rc` is the return/reason code reported by the client library, or None
    when the failure happened below the MQTT layer (DNS, refused, timeout).
    """

    def __init__(self, rc: Optional[int], reason: str) -> None:
        self.rc = rc
        self.reason = reason
        code = f", error {rc}" if rc is not None else ""
        super().__init__(f"Failed to connect to MQTT broker{code}: {reason}")


class PublishError(GatewayError):
    def __init__(self, rc: Optional[int], reason: str) -> None:
        self.rc = rc
        self.reason = reason
        code = f", error {rc}" if rc is not None else ""
        super().__init__(f"Failed to publish MQTT message{code}: {reason}")
