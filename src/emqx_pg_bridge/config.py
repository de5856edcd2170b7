"""
Bridge configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files, on top of an optional YAML config file.

Priority (lowest -> highest):
1) YAML config file (--config, else ./config/config.yaml or ./config.yaml)
2) EMQGODB_<SECTION>_<KEY> variables overriding single YAML keys
3) /etc/emqx-pg-bridge/bridge.env (system install)
4) ~/.config/emqx-pg-bridge/.env (user install)
5) ./.env (project override)
6) explicit env file passed on the command line
7) process environment variables (always win)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Any, Iterable, Optional
from urllib.parse import urlsplit

import yaml
from dotenv import load_dotenv
from psycopg2.extensions import make_dsn

from emqx_pg_bridge.mqtt_topics import TopicFilterError, validate_topic_filter


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


_PLAIN_SCHEMES = {"tcp": 1883, "mqtt": 1883}
_TLS_SCHEMES = {"ssl": 8883, "tls": 8883, "mqtts": 8883}

_SSLMODES = {"disable", "allow", "prefer", "require", "verify-ca", "verify-full"}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def package_version() -> str:
    try:
        return _pkg_version("emqx-pg-bridge")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/emqx-pg-bridge/bridge.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "emqx-pg-bridge" / ".env"

    # 3) project override
    yield Path(".env")


def _require_env(key: str) -> str:
    v = os.getenv(key)
    if v is None or v.strip() == "":
        raise ConfigError(f"Missing required environment variable: {key}")
    return v.strip()


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_float(key: str, raw: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {key}: {raw!r}") from exc


def _parse_bool(key: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


def _int_env(key: str, default: int) -> int:
    return _parse_int(key, os.getenv(key, str(default)))


def _positive_float_env(key: str, default: float) -> float:
    value = _parse_float(key, os.getenv(key, str(default)))
    if value <= 0:
        raise ConfigError(f"{key} must be > 0")
    return value


def _check_port(key: str, port: int) -> int:
    if not (1 <= port <= 65535):
        raise ConfigError(f"{key} out of range: {port}")
    return port


@dataclass(frozen=True, slots=True)
class BrokerAddress:
    host: str
    port: int
    tls: bool


def parse_broker_address(raw: str) -> BrokerAddress:
    """
    Parse a broker address such as ``tcp://host:1883``, ``ssl://host:8883`` or ``host[:port]``.

    TLS schemes (ssl, tls, mqtts) imply an encrypted transport.
    """
    raw = raw.strip()
    if "://" not in raw:
        raw = f"tcp://{raw}"
    parts = urlsplit(raw)
    scheme = parts.scheme.lower()
    if scheme in _PLAIN_SCHEMES:
        default_port, tls = _PLAIN_SCHEMES[scheme], False
    elif scheme in _TLS_SCHEMES:
        default_port, tls = _TLS_SCHEMES[scheme], True
    else:
        raise ConfigError(f"Unsupported broker scheme: {parts.scheme!r}")

    if not parts.hostname:
        raise ConfigError(f"Broker address has no host: {raw!r}")
    try:
        port = parts.port or default_port
    except ValueError as exc:
        raise ConfigError(f"Invalid broker port in {raw!r}") from exc
    return BrokerAddress(host=parts.hostname, port=_check_port("MQTT_BROKER port", port), tls=tls)


@dataclass(frozen=True, slots=True)
class MQTTConfig:
    broker: str
    host: str
    port: int
    client_id: str
    username: str
    password: str
    topic: str
    qos: int
    ssl_enabled: bool
    ssl_insecure: bool = True
    keepalive: int = 60
    reconnect_interval_s: float = 5.0
    connect_timeout_s: float = 10.0


@dataclass(frozen=True, slots=True)
class PostgresConfig:
    host: str
    port: int
    database: str
    username: str
    password: str
    sslmode: str
    table: str
    pool_min: int = 1
    pool_max: int = 10

    def dsn(self) -> str:
        """libpq keyword/value connection string, quoted by psycopg2."""
        return make_dsn(
            host=self.host,
            port=self.port,
            user=self.username or None,
            password=self.password or None,
            dbname=self.database,
            sslmode=self.sslmode,
        )


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    mqtt: MQTTConfig
    postgres: PostgresConfig
    version: str


def _load_env_files(env_file: Optional[Path]) -> None:
    # override=False everywhere: the first source to define a key wins, so load
    # from highest to lowest priority
    if env_file is not None:
        if not env_file.is_file():
            raise ConfigError(f"Env file not found: {env_file}")
        load_dotenv(env_file, override=False)

    for p in reversed(list(_env_paths())):
        if p.is_file():
            load_dotenv(p, override=False)


# YAML key path -> environment variable it fills in
_FILE_KEYS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("emqx", "broker"), "MQTT_BROKER"),
    (("emqx", "client_id"), "MQTT_CLIENT_ID"),
    (("emqx", "username"), "MQTT_USERNAME"),
    (("emqx", "password"), "MQTT_PASSWORD"),
    (("emqx", "topic"), "MQTT_TOPIC"),
    (("emqx", "qos"), "MQTT_QOS"),
    (("emqx", "ssl", "enabled"), "MQTT_SSL_ENABLED"),
    (("emqx", "ssl", "insecure"), "MQTT_SSL_INSECURE"),
    (("emqx", "keepalive"), "MQTT_KEEPALIVE"),
    (("emqx", "reconnect_interval"), "MQTT_RECONNECT_INTERVAL"),
    (("emqx", "connect_timeout"), "MQTT_CONNECT_TIMEOUT"),
    (("postgresql", "host"), "PG_HOST"),
    (("postgresql", "port"), "PG_PORT"),
    (("postgresql", "database"), "PG_DATABASE"),
    (("postgresql", "username"), "PG_USERNAME"),
    (("postgresql", "password"), "PG_PASSWORD"),
    (("postgresql", "sslmode"), "PG_SSLMODE"),
    (("postgresql", "table"), "PG_TABLE"),
    (("postgresql", "pool_min"), "PG_POOL_MIN"),
    (("postgresql", "pool_max"), "PG_POOL_MAX"),
)

_LEGACY_ENV_PREFIX = "EMQGODB"


def _config_file_paths() -> Iterable[Path]:
    yield Path("config") / "config.yaml"
    yield Path("config.yaml")


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def _lookup(data: dict[str, Any], path: tuple[str, ...]) -> Any:
    node: Any = data
    for part in path:
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def _apply_config_file(config_file: Optional[Path], *, search: bool) -> None:
    """
    Fill environment variables that are still unset from the YAML config file.

    Layout:
        emqx:       {broker, client_id, username, password, topic, qos, ssl: {enabled}}
        postgresql: {host, port, database, username, password, sslmode, table}

    A single key can be overridden with EMQGODB_<PATH> (e.g. EMQGODB_EMQX_BROKER,
    EMQGODB_EMQX_SSL_ENABLED); the bridge's own variables win over both.
    """
    data: dict[str, Any] = {}
    source: Optional[Path] = None
    if config_file is not None:
        if not config_file.is_file():
            raise ConfigError(f"Config file not found: {config_file}")
        source = config_file
    elif search:
        source = next((p for p in _config_file_paths() if p.is_file()), None)
    if source is not None:
        data = _read_config_file(source)

    for path, key in _FILE_KEYS:
        if os.getenv(key) is not None:
            continue
        legacy_key = "_".join((_LEGACY_ENV_PREFIX, *path)).upper()
        value = os.getenv(legacy_key)
        if value is None:
            value = _lookup(data, path)
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            raise ConfigError(f"Config key {'.'.join(path)} must be a scalar value")
        if isinstance(value, bool):
            value = "true" if value else "false"
        os.environ[key] = str(value)


def _load_mqtt() -> MQTTConfig:
    broker = _require_env("MQTT_BROKER")
    address = parse_broker_address(broker)

    topic = _require_env("MQTT_TOPIC")
    try:
        validate_topic_filter(topic)
    except TopicFilterError as exc:
        raise ConfigError(f"Invalid MQTT_TOPIC: {exc}") from exc

    qos = _int_env("MQTT_QOS", 1)
    if qos not in (0, 1, 2):
        raise ConfigError(f"MQTT_QOS must be 0, 1 or 2, got {qos}")

    keepalive = _int_env("MQTT_KEEPALIVE", 60)
    if keepalive <= 0:
        raise ConfigError("MQTT_KEEPALIVE must be > 0")

    ssl_enabled = _parse_bool("MQTT_SSL_ENABLED", os.getenv("MQTT_SSL_ENABLED", "false"))

    return MQTTConfig(
        broker=broker,
        host=address.host,
        port=address.port,
        client_id=os.getenv("MQTT_CLIENT_ID", ""),
        username=os.getenv("MQTT_USERNAME", ""),
        password=os.getenv("MQTT_PASSWORD", ""),
        topic=topic,
        qos=qos,
        ssl_enabled=ssl_enabled or address.tls,
        ssl_insecure=_parse_bool("MQTT_SSL_INSECURE", os.getenv("MQTT_SSL_INSECURE", "true")),
        keepalive=keepalive,
        reconnect_interval_s=_positive_float_env("MQTT_RECONNECT_INTERVAL", 5.0),
        connect_timeout_s=_positive_float_env("MQTT_CONNECT_TIMEOUT", 10.0),
    )


def _load_postgres() -> PostgresConfig:
    host = _require_env("PG_HOST")
    port = _check_port("PG_PORT", _int_env("PG_PORT", 5432))
    database = _require_env("PG_DATABASE")

    sslmode = os.getenv("PG_SSLMODE", "disable").strip() or "disable"
    if sslmode not in _SSLMODES:
        raise ConfigError(f"Invalid PG_SSLMODE: {sslmode!r}")

    table = _require_env("PG_TABLE")
    parts = table.split(".")
    if len(parts) > 2 or any(not p for p in parts):
        raise ConfigError(f"PG_TABLE must be 'table' or 'schema.table', got {table!r}")

    pool_min = _int_env("PG_POOL_MIN", 1)
    pool_max = _int_env("PG_POOL_MAX", 10)
    if pool_min < 0 or pool_max < 1 or pool_min > pool_max:
        raise ConfigError(
            f"Invalid pool bounds PG_POOL_MIN={pool_min} PG_POOL_MAX={pool_max}"
        )

    return PostgresConfig(
        host=host,
        port=port,
        database=database,
        username=os.getenv("PG_USERNAME", ""),
        password=os.getenv("PG_PASSWORD", ""),
        sslmode=sslmode,
        table=table,
        pool_min=pool_min,
        pool_max=pool_max,
    )


def load_config(
    *,
    dotenv_enabled: bool = True,
    env_file: Optional[Path] = None,
    config_file: Optional[Path] = None,
) -> BridgeConfig:
    """
    load config by reading env files and the YAML config file and then
    validating the environment.

    dotenv_enabled=False skips every file found by searching standard locations;
    an explicit config_file is still read.

    Returns an immutable BridgeConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        _load_env_files(env_file)
    _apply_config_file(config_file, search=dotenv_enabled)

    return BridgeConfig(
        mqtt=_load_mqtt(),
        postgres=_load_postgres(),
        version=package_version(),
    )
