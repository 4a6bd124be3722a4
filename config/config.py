"""
Configuration management for the UDP MQTT gateway using Pydantic.

The configuration file is plain text with one `Key Value` pair per line.
`#` starts a comment, surrounding whitespace is ignored and blank lines are
skipped. Files ending in `.yaml`/`.yml` are read as a YAML mapping of the
same keys instead.

Loading is a gate: `load_config` either returns a frozen, fully validated
`GatewayConfig` or raises a `ConfigError` subclass. Nothing downstream
re-checks the configuration.
"""

import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, NamedTuple, Optional, Tuple, Union
from urllib.parse import urlsplit

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_core import PydanticCustomError

from errors import (
    ConfigError,
    ConfigSyntaxError,
    InconsistentCredentials,
    InvalidEnumValue,
    InvalidValue,
    MalformedValue,
    MissingRequiredField,
)

# Constants
_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

MQTT_PROTOCOL_VERSIONS = ("default", "3.1", "3.1.1", "5")
TLS_VERSIONS = ("default", "1.0", "1.1", "1.2")
QOS_LEVELS = (0, 1, 2)
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

logger = logging.getLogger(__name__)


class ConfigEntry(NamedTuple):
    """One `Key Value` pair as read from the configuration file."""

    key: str
    value: str
    line: Optional[int] = None


# Config file key -> (model field path, value kind)
_KEYS: Dict[str, Tuple[Tuple[str, ...], str]] = {
    "InputUdpPort": (("input_udp_port",), "int"),
    "MqttUrl": (("mqtt_url",), "str"),
    "MqttTopic": (("mqtt_topic",), "str"),
    "MqttClientID": (("mqtt_client_id",), "str"),
    "MqttUsername": (("mqtt_username",), "str"),
    "MqttPassword": (("mqtt_password",), "str"),
    "MqttVersion": (("mqtt_protocol_version",), "str"),
    "MqttQosLevel": (("mqtt_qos",), "int"),
    "MqttKeepAliveInterval": (("mqtt_keep_alive_seconds",), "int"),
    "MqttRetryInterval": (("mqtt_retry_interval_ms",), "int"),
    "MqttConnectionTimeout": (("mqtt_connect_timeout_ms",), "int"),
    "MqttSslEnableServerCertAuth": (("tls", "enable_server_cert_auth"), "bool"),
    "MqttSslVersion": (("tls", "tls_version"), "str"),
    "MqttSslVerify": (("tls", "verify"), "bool"),
    "MqttSslTrustStore": (("tls", "trust_store_path"), "str"),
    "MqttSslKeyStore": (("tls", "key_store_path"), "str"),
    "MqttSslPrivateKey": (("tls", "private_key_path"), "str"),
    "MqttSslPrivateKeyPasswd": (("tls", "private_key_password"), "str"),
    "StatsInterval": (("stats_interval_seconds",), "int"),
    "LogLevel": (("logging", "level"), "str"),
    "LogFile": (("logging", "file"), "str"),
    "LogFileMaxSize": (("logging", "max_size"), "str"),
    "LogFileBackupCount": (("logging", "backup_count"), "int"),
}
_FIELD_KEYS: Dict[Tuple[str, ...], str] = {path: key for key, (path, _) in _KEYS.items()}

_ALLOWED_VALUES: Dict[str, Tuple[Any, ...]] = {
    "MqttVersion": MQTT_PROTOCOL_VERSIONS,
    "MqttSslVersion": TLS_VERSIONS,
    "MqttQosLevel": QOS_LEVELS,
    "LogLevel": LOG_LEVELS,
}

_INT_PATTERN = re.compile(r"^[+-]?\d+$")


class BrokerAddress(NamedTuple):
    """Broker endpoint derived from `MqttUrl`."""

    transport: str
    use_tls: bool
    hostname: str
    port: int
    path: Optional[str] = None


# scheme -> (transport, use_tls, default port)
_URL_SCHEMES: Dict[str, Tuple[str, bool, int]] = {
    "tcp": ("tcp", False, 1883),
    "mqtt": ("tcp", False, 1883),
    "ssl": ("tcp", True, 8883),
    "mqtts": ("tcp", True, 8883),
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
}


def parse_broker_url(url: str) -> BrokerAddress:
    """
    Split a broker URL such as `tcp://host:1883` or `ssl://host` into its parts.

    A bare `host[:port]` is treated as `tcp://`. Raises ValueError for
    unsupported schemes, a missing host or an invalid port.
    """
    if "://" not in url:
        url = f"tcp://{url}"

    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in _URL_SCHEMES:
        raise ValueError(
            f"unsupported scheme '{scheme}' "
            f"(expected one of: {', '.join(_URL_SCHEMES)})"
        )
    if not parts.hostname:
        raise ValueError("missing broker host name")

    try:
        port = parts.port
    except ValueError:
        raise ValueError("invalid broker port") from None

    transport, use_tls, default_port = _URL_SCHEMES[scheme]
    path = (parts.path or None) if transport == "websockets" else None
    return BrokerAddress(transport, use_tls, parts.hostname, port or default_port, path)


def parse_size(size_str: str) -> int:
    """Parse a human file size such as `10MB`, `512K` or `1048576` into bytes."""
    text = size_str.strip().upper()
    multiplier = 1
    for suffixes, factor in ((("KB", "K"), 1024), (("MB", "M"), 1024 * 1024)):
        for suffix in suffixes:
            if text.endswith(suffix):
                text = text[: -len(suffix)]
                multiplier = factor
                break
        if multiplier != 1:
            break

    try:
        value = float(text)
    except ValueError:
        raise ValueError(f"cannot parse size '{size_str}'") from None
    if value <= 0:
        raise ValueError("size must be positive")
    return int(value * multiplier)


def verbosity_to_level(verbosity: int) -> int:
    """Map the number of `-v` flags to a logging level."""
    if verbosity <= 0:
        return logging.WARNING
    if verbosity == 1:
        return logging.INFO
    return logging.DEBUG


def setup_logging(
    level: int,
    log_file: Optional[str] = None,
    max_size: str = "10MB",
    backup_count: int = 5,
    log_format: str = _LOG_FORMAT,
) -> None:
    """
    Configure process-wide logging.

    Always logs to stderr; additionally to a rotating file when `log_file`
    is given.
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_path = Path(log_file)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_path,
                maxBytes=parse_size(max_size),
                backupCount=backup_count,
            )
            file_handler.setFormatter(logging.Formatter(log_format))
            handlers.append(file_handler)
        except OSError as e:
            # Fall back to stderr only if the log file is not writable
            print(f"Failed to setup file logging: {e}")

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )

    logging.getLogger("paho.mqtt").setLevel(logging.WARNING)


class TlsConfig(BaseModel):
    """TLS options, used only when `MqttUrl` selects a TLS transport."""

    model_config = ConfigDict(frozen=True)

    enable_server_cert_auth: bool = True
    tls_version: Literal["default", "1.0", "1.1", "1.2"] = "1.2"
    verify: bool = False
    trust_store_path: Optional[str] = None
    key_store_path: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_password: Optional[SecretStr] = None

    @field_validator(
        "trust_store_path",
        "key_store_path",
        "private_key_path",
        "private_key_password",
        mode="before",
    )  # type: ignore[misc]
    @classmethod
    def empty_to_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip() or None
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True)

    level: Optional[Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]] = None
    file: Optional[str] = None
    max_size: str = "10MB"
    backup_count: int = Field(default=5, ge=0)

    @field_validator("level", mode="before")  # type: ignore[misc]
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper() or None
        return v

    @field_validator("max_size")  # type: ignore[misc]
    @classmethod
    def check_max_size(cls, v: str) -> str:
        parse_size(v)
        return v


class GatewayConfig(BaseModel):
    """Validated, immutable gateway configuration."""

    model_config = ConfigDict(frozen=True)

    input_udp_port: int = Field(ge=0, le=65535)
    mqtt_url: str = Field(min_length=1)
    mqtt_topic: str = Field(min_length=1)
    mqtt_client_id: str = Field(min_length=1)
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[SecretStr] = None
    mqtt_protocol_version: Literal["default", "3.1", "3.1.1", "5"] = "default"
    mqtt_qos: Literal[0, 1, 2] = 0
    mqtt_keep_alive_seconds: int = Field(default=20, gt=0)
    mqtt_retry_interval_ms: int = Field(default=1000, gt=0)
    mqtt_connect_timeout_ms: int = Field(default=1000, gt=0)
    tls: TlsConfig = Field(default_factory=TlsConfig)
    stats_interval_seconds: int = Field(default=60, ge=0)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("mqtt_username", "mqtt_password", mode="before")  # type: ignore[misc]
    @classmethod
    def empty_to_none(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("mqtt_url")  # type: ignore[misc]
    @classmethod
    def check_url(cls, v: str) -> str:
        parse_broker_url(v)
        return v

    @field_validator("mqtt_topic")  # type: ignore[misc]
    @classmethod
    def check_topic(cls, v: str) -> str:
        if "+" in v or "#" in v:
            raise ValueError("Publish topic cannot contain wildcards")
        if "\x00" in v:
            raise ValueError("Topic cannot contain NUL characters")
        if len(v.encode("utf-8")) > 65535:
            raise ValueError("Topic is longer than 65535 bytes")
        return v

    @model_validator(mode="after")  # type: ignore[misc]
    def check_credentials(self) -> "GatewayConfig":
        if self.mqtt_username and self.mqtt_password is None:
            raise PydanticCustomError(
                "inconsistent_credentials",
                "MqttPassword must be set when a username is given",
            )
        return self

    @property
    def broker(self) -> BrokerAddress:
        return parse_broker_url(self.mqtt_url)

    @property
    def connect_timeout(self) -> float:
        """Connection (and acknowledgement) timeout in seconds."""
        return self.mqtt_connect_timeout_ms / 1000

    def describe(self) -> List[str]:
        """Human readable dump of the configuration. Secrets stay masked."""
        lines = [
            "Configuration:",
            f"- Input UDP Port:       {self.input_udp_port}",
            f"- MQTT URL:             {self.mqtt_url}",
            f"- MQTT Topic:           {self.mqtt_topic}",
            f"- MQTT Client ID:       {self.mqtt_client_id}",
        ]
        if self.mqtt_username:
            lines.append(f"- MQTT User Name:       {self.mqtt_username}")
            lines.append(f"- MQTT Password:        {self.mqtt_password}")

        lines += [
            f"- MQTT Version:         {self.mqtt_protocol_version}",
            f"- MQTT QOS Level:       {self.mqtt_qos}",
            f"- MQTT Keep Alive Int.: {self.mqtt_keep_alive_seconds}",
            f"- MQTT Retry Int.:      {self.mqtt_retry_interval_ms}",
            f"- MQTT Conn. Timeout:   {self.mqtt_connect_timeout_ms}",
            f"- TLS Server Cert Auth: {int(self.tls.enable_server_cert_auth)}",
            f"- TLS Version:          {self.tls.tls_version}",
            f"- TLS Verify:           {int(self.tls.verify)}",
        ]
        if self.tls.trust_store_path:
            lines.append(f"- TLS Trust Store:      {self.tls.trust_store_path}")
        if self.tls.key_store_path:
            lines.append(f"- TLS Key Store:        {self.tls.key_store_path}")
        if self.tls.private_key_path:
            lines.append(f"- TLS Private Key:      {self.tls.private_key_path}")
            lines.append(f"- TLS Priv. Key Passwd: {self.tls.private_key_password}")
        return lines

    def setup_logging(self, verbosity: int = 0) -> None:
        """
        Configure logging based on the configuration.

        `LogLevel` wins over the command-line verbosity when it is set.
        """
        if self.logging.level:
            level = getattr(logging, self.logging.level)
        else:
            level = verbosity_to_level(verbosity)

        setup_logging(
            level,
            log_file=self.logging.file,
            max_size=self.logging.max_size,
            backup_count=self.logging.backup_count,
        )


def parse_config_line(text: str, line_num: int) -> Optional[ConfigEntry]:
    """Parse one line of the configuration file. Returns None for blank lines."""
    text = text.split("#", 1)[0].strip()
    if not text:
        return None

    parts = text.split(None, 1)
    if len(parts) != 2:
        raise ConfigSyntaxError(line_num, text)
    return ConfigEntry(parts[0], parts[1].strip(), line_num)


def _yaml_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if value is None:
        return ""
    return str(value)


def read_config_entries(config_path: Union[str, Path]) -> Dict[str, ConfigEntry]:
    """
    Read the raw key/value entries of a configuration file.

    Later occurrences of a key override earlier ones.
    """
    config_file = Path(config_path)

    if not config_file.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    if config_file.suffix.lower() in (".yaml", ".yml"):
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                data: Any = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration: {e}") from e
        except OSError as e:
            raise ConfigError(f"Unable to open config file: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Config file must be a mapping of keys to values")
        return {
            str(key): ConfigEntry(str(key), _yaml_scalar(value))
            for key, value in data.items()
        }

    entries: Dict[str, ConfigEntry] = {}
    try:
        with open(config_file, "r", encoding="utf-8") as f:
            for line_num, raw_line in enumerate(f, start=1):
                entry = parse_config_line(raw_line, line_num)
                if entry is not None:
                    entries[entry.key] = entry
    except OSError as e:
        raise ConfigError(f"Unable to open config file: {e}") from e
    return entries


def _convert(entry: ConfigEntry, kind: str) -> Any:
    if kind == "str":
        return entry.value
    if not _INT_PATTERN.match(entry.value):
        raise MalformedValue(entry.key, entry.value, entry.line)
    number = int(entry.value)
    return number != 0 if kind == "bool" else number


def _translate_error(
    error: Mapping[str, Any], entries: Mapping[str, ConfigEntry]
) -> ConfigError:
    """Map one pydantic error onto the gateway's configuration error taxonomy."""
    loc = tuple(str(part) for part in error["loc"])
    key = _FIELD_KEYS.get(loc, ".".join(loc))
    error_type = error["type"]
    value = error.get("input")

    if error_type == "inconsistent_credentials":
        return InconsistentCredentials()
    if error_type in ("missing", "string_too_short"):
        return MissingRequiredField(key)
    if error_type in ("literal_error", "enum"):
        return InvalidEnumValue(key, value, _ALLOWED_VALUES.get(key, ()))
    if error_type.startswith("int_"):
        entry = entries.get(key)
        return MalformedValue(key, str(value), entry.line if entry else None)

    reason = str(error.get("msg", error_type))
    if reason.startswith("Value error, "):
        reason = reason[len("Value error, "):]
    return InvalidValue(key, value, reason)


def validate(raw: Mapping[str, Union[ConfigEntry, str]]) -> GatewayConfig:
    """
    Turn parsed key/value pairs into a `GatewayConfig`.

    Raises the first `ConfigError` found. Unrecognized keys are ignored.
    """
    entries = {
        key: value if isinstance(value, ConfigEntry) else ConfigEntry(key, str(value))
        for key, value in raw.items()
    }

    data: Dict[str, Any] = {}
    for key, entry in entries.items():
        if key not in _KEYS:
            logger.debug(f"Ignoring unknown configuration key: {key}")
            continue

        path, kind = _KEYS[key]
        target = data
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = _convert(entry, kind)

    try:
        return GatewayConfig.model_validate(data)
    except ValidationError as exc:
        errors = exc.errors()
        for error in errors[1:]:
            logger.debug(f"Additional configuration error: {error['msg']}")
        raise _translate_error(errors[0], entries) from None


def load_config(config_path: Union[str, Path]) -> GatewayConfig:
    """Read and validate a configuration file."""
    return validate(read_config_entries(config_path))
