"""Configuration loader for pilot-gateway."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

from . import constants
from .errors import ConfigurationError


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    clean_session: bool = True
    keepalive: int = constants.DEFAULT_KEEPALIVE_SECONDS
    tls: bool = False
    ca_file: Optional[Path] = None

    def validate(self) -> None:
        """Fail fast on settings that can never produce a working session."""

        if not self.host or not self.host.strip():
            raise ConfigurationError("Broker host is not configured")
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"Broker port {self.port} is out of range")
        if not self.username:
            raise ConfigurationError("Broker username is not configured")
        if self.password is None or self.password == "":
            raise ConfigurationError("Broker password is not configured")
        if self.keepalive <= 0:
            raise ConfigurationError("Broker keepalive must be positive")
        if self.ca_file is not None and not self.ca_file.exists():
            raise ConfigurationError(f"CA file {self.ca_file} does not exist")


@dataclass(slots=True)
class DeviceConfig:
    aircraft_serial: Optional[str] = None
    gateway_serial: Optional[str] = None
    remote_controller_serial: Optional[str] = None
    default_subscriptions: List[str] = field(default_factory=list)
    default_qos: int = 0


@dataclass(slots=True)
class BridgeConfig:
    """Opaque vendor bridge settings passed through to the bridge as-is."""

    app_id: Optional[str] = None
    app_key: Optional[str] = None
    license: Optional[str] = None
    workspace_id: Optional[str] = None
    platform_name: Optional[str] = None


@dataclass(slots=True)
class SessionConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    reconnect_jitter_ratio: float = 0.2
    reconnect_max_attempts: int = 5
    connect_timeout_seconds: float = 30.0
    publish_timeout_seconds: float = 10.0


@dataclass(slots=True)
class CommandConfig:
    reply_timeout_seconds: float = 10.0


@dataclass(slots=True)
class StorageConfig:
    path: Path = constants.DEFAULT_STORAGE_PATH


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class GatewayConfig:
    broker: BrokerConfig
    device: DeviceConfig
    bridge: BridgeConfig
    session: SessionConfig
    commands: CommandConfig
    storage: StorageConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path


def _parse_list(value: str, *, default: Iterable[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _apply_environment(parser: ConfigParser, environ: Mapping[str, str]) -> None:
    """Overlay broker credentials from the environment.

    Credentials are expected to be injected by the deployment rather than
    committed to the configuration file.
    """

    for key in ("host", "port", "username", "password", "client_id"):
        env_key = f"{constants.ENV_PREFIX}BROKER_{key.upper()}"
        value = environ.get(env_key)
        if value:
            parser.set("broker", key, value)


def load_config(
    path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None
) -> GatewayConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "clean_session": "true",
                "keepalive": str(constants.DEFAULT_KEEPALIVE_SECONDS),
                "tls": "false",
            },
            "device": {
                "default_subscriptions": "",
                "default_qos": "0",
            },
            "bridge": {},
            "session": {
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
                "reconnect_jitter_ratio": "0.2",
                "reconnect_max_attempts": "5",
                "connect_timeout_seconds": "30.0",
                "publish_timeout_seconds": "10.0",
            },
            "commands": {
                "reply_timeout_seconds": "10.0",
            },
            "storage": {
                "path": str(constants.DEFAULT_STORAGE_PATH),
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    _apply_environment(parser, os.environ if environ is None else environ)

    host_value = parser.get("broker", "host")
    try:
        port_value = parser.getint(
            "broker", "port", fallback=constants.DEFAULT_BROKER_PORT
        )
    except ValueError as exc:
        raise ConfigurationError(
            f"Invalid broker port: {parser.get('broker', 'port')!r}"
        ) from exc

    if ":" in host_value:
        host_part, port_part = host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            host_value = host_part
            port_value = parsed_port
            parser.set("broker", "host", host_part)
            parser.set("broker", "port", str(parsed_port))

    ca_file = _optional(parser.get("broker", "ca_file", fallback=None))

    broker = BrokerConfig(
        host=host_value,
        port=port_value,
        username=_optional(parser.get("broker", "username", fallback=None)),
        password=parser.get("broker", "password", fallback=None),
        client_id=_optional(parser.get("broker", "client_id", fallback=None)),
        clean_session=parser.getboolean("broker", "clean_session", fallback=True),
        keepalive=parser.getint(
            "broker", "keepalive", fallback=constants.DEFAULT_KEEPALIVE_SECONDS
        ),
        tls=parser.getboolean("broker", "tls", fallback=False),
        ca_file=Path(ca_file).expanduser() if ca_file else None,
    )

    default_qos = parser.getint("device", "default_qos", fallback=0)
    if default_qos not in (0, 1, 2):
        raise ConfigurationError(f"Invalid default_qos {default_qos}")

    device = DeviceConfig(
        aircraft_serial=_optional(
            parser.get("device", "aircraft_serial", fallback=None)
        ),
        gateway_serial=_optional(parser.get("device", "gateway_serial", fallback=None)),
        remote_controller_serial=_optional(
            parser.get("device", "remote_controller_serial", fallback=None)
        ),
        default_subscriptions=_parse_list(
            parser.get("device", "default_subscriptions", fallback=""), default=()
        ),
        default_qos=default_qos,
    )

    bridge = BridgeConfig(
        app_id=_optional(parser.get("bridge", "app_id", fallback=None)),
        app_key=_optional(parser.get("bridge", "app_key", fallback=None)),
        license=_optional(parser.get("bridge", "license", fallback=None)),
        workspace_id=_optional(parser.get("bridge", "workspace_id", fallback=None)),
        platform_name=_optional(parser.get("bridge", "platform_name", fallback=None)),
    )

    session = SessionConfig(
        reconnect_initial_seconds=max(
            0.0, parser.getfloat("session", "reconnect_initial_seconds", fallback=1.0)
        ),
        reconnect_max_seconds=max(
            0.0, parser.getfloat("session", "reconnect_max_seconds", fallback=30.0)
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(
                1.0,
                parser.getfloat("session", "reconnect_jitter_ratio", fallback=0.2),
            ),
        ),
        reconnect_max_attempts=max(
            1, parser.getint("session", "reconnect_max_attempts", fallback=5)
        ),
        connect_timeout_seconds=max(
            0.1, parser.getfloat("session", "connect_timeout_seconds", fallback=30.0)
        ),
        publish_timeout_seconds=max(
            0.1, parser.getfloat("session", "publish_timeout_seconds", fallback=10.0)
        ),
    )

    commands = CommandConfig(
        reply_timeout_seconds=max(
            0.1, parser.getfloat("commands", "reply_timeout_seconds", fallback=10.0)
        ),
    )

    storage = StorageConfig(
        path=Path(
            parser.get("storage", "path", fallback=str(constants.DEFAULT_STORAGE_PATH))
        ).expanduser(),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(
            parser.get("logging", "path", fallback=str(constants.DEFAULT_LOG_PATH))
        ).expanduser(),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    return GatewayConfig(
        broker=broker,
        device=device,
        bridge=bridge,
        session=session,
        commands=commands,
        storage=storage,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )


def save_config(config: GatewayConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
