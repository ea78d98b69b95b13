"""Application configuration management.

Loads configuration from config.yaml files and environment variables.
Environment variables take precedence over config file settings.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# Default config locations
DEFAULT_CONFIG_DIR = Path.home() / ".authflow"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

# Environment variable prefix
ENV_PREFIX = "AUTHFLOW_"


def _optional_path(value: Any) -> Path | None:
    return Path(value).expanduser() if value else None


@dataclass
class TLSSettings:
    """TLS/HTTPS configuration settings."""

    enabled: bool = True
    cert_path: Path | None = None
    key_path: Path | None = None
    auto_generate: bool = True
    common_name: str = "localhost"
    days_valid: int = 365

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TLSSettings:
        """Create TLSSettings from a dictionary."""
        return cls(
            enabled=data.get("enabled", True),
            cert_path=_optional_path(data.get("cert_path")),
            key_path=_optional_path(data.get("key_path")),
            auto_generate=data.get("auto_generate", True),
            common_name=data.get("common_name", "localhost"),
            days_valid=data.get("days_valid", 365),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "enabled": self.enabled,
            "cert_path": str(self.cert_path) if self.cert_path else None,
            "key_path": str(self.key_path) if self.key_path else None,
            "auto_generate": self.auto_generate,
            "common_name": self.common_name,
            "days_valid": self.days_valid,
        }


@dataclass
class ServerSettings:
    """Server configuration settings."""

    host: str = "127.0.0.1"
    port: int = 8443
    debug: bool = False
    tls: TLSSettings = field(default_factory=TLSSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerSettings:
        """Create ServerSettings from a dictionary."""
        tls_data = data.get("tls", {})
        return cls(
            host=data.get("host", "127.0.0.1"),
            port=data.get("port", 8443),
            debug=data.get("debug", False),
            tls=TLSSettings.from_dict(tls_data) if tls_data else TLSSettings(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
            "tls": self.tls.to_dict(),
        }


@dataclass
class SPSettings:
    """Service Provider protocol settings."""

    entity_id: str = "https://localhost:8443/saml/metadata"
    base_url: str = "https://localhost:8443"
    acs_path: str = "/saml/acs"
    slo_path: str = "/saml/slo"
    idp_entity_id: str | None = None
    name_id_format: str = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"
    sign_authn_requests: bool = True
    want_assertions_signed: bool = True
    want_response_signed: bool = False
    want_assertions_encrypted: bool = False
    allow_unsolicited: bool = False
    clock_skew_seconds: int = 300
    max_message_bytes: int = 256 * 1024
    default_landing_url: str = "/"

    @property
    def acs_url(self) -> str:
        """Absolute Assertion Consumer Service URL."""
        return f"{self.base_url.rstrip('/')}{self.acs_path}"

    @property
    def slo_url(self) -> str:
        """Absolute Single Logout Service URL."""
        return f"{self.base_url.rstrip('/')}{self.slo_path}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SPSettings:
        """Create SPSettings from a dictionary."""
        defaults = cls()
        return cls(**{
            name: data.get(name, getattr(defaults, name))
            for name in defaults.to_dict()
        })

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_id": self.entity_id,
            "base_url": self.base_url,
            "acs_path": self.acs_path,
            "slo_path": self.slo_path,
            "idp_entity_id": self.idp_entity_id,
            "name_id_format": self.name_id_format,
            "sign_authn_requests": self.sign_authn_requests,
            "want_assertions_signed": self.want_assertions_signed,
            "want_response_signed": self.want_response_signed,
            "want_assertions_encrypted": self.want_assertions_encrypted,
            "allow_unsolicited": self.allow_unsolicited,
            "clock_skew_seconds": self.clock_skew_seconds,
            "max_message_bytes": self.max_message_bytes,
            "default_landing_url": self.default_landing_url,
        }


@dataclass
class SessionSettings:
    """Session lifecycle settings."""

    ttl_seconds: int = 3600
    sliding_expiry: bool = True
    max_lifetime_seconds: int = 8 * 3600
    bind_ip: bool = False
    bind_user_agent: bool = True
    pending_request_ttl_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionSettings:
        """Create SessionSettings from a dictionary."""
        return cls(
            ttl_seconds=data.get("ttl_seconds", 3600),
            sliding_expiry=data.get("sliding_expiry", True),
            max_lifetime_seconds=data.get("max_lifetime_seconds", 8 * 3600),
            bind_ip=data.get("bind_ip", False),
            bind_user_agent=data.get("bind_user_agent", True),
            pending_request_ttl_seconds=data.get("pending_request_ttl_seconds", 300),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "ttl_seconds": self.ttl_seconds,
            "sliding_expiry": self.sliding_expiry,
            "max_lifetime_seconds": self.max_lifetime_seconds,
            "bind_ip": self.bind_ip,
            "bind_user_agent": self.bind_user_agent,
            "pending_request_ttl_seconds": self.pending_request_ttl_seconds,
        }


@dataclass
class MetadataSource:
    """Where to load a trusted entity's metadata from."""

    entity_id: str
    url: str | None = None
    path: Path | None = None
    signing_cert_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetadataSource:
        """Create MetadataSource from a dictionary."""
        return cls(
            entity_id=data["entity_id"],
            url=data.get("url"),
            path=_optional_path(data.get("path")),
            signing_cert_path=_optional_path(data.get("signing_cert_path")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_id": self.entity_id,
            "url": self.url,
            "path": str(self.path) if self.path else None,
            "signing_cert_path": str(self.signing_cert_path) if self.signing_cert_path else None,
        }


@dataclass
class TrustSettings:
    """Trust/metadata store settings."""

    metadata_ttl_seconds: int = 3600
    staleness_tolerance_seconds: int = 300
    fetch_timeout_seconds: float = 10.0
    fetch_retries: int = 3
    backoff_seconds: float = 0.5
    backchannel_timeout_seconds: float = 5.0
    verify_tls: bool = True
    sources: list[MetadataSource] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrustSettings:
        """Create TrustSettings from a dictionary."""
        return cls(
            metadata_ttl_seconds=data.get("metadata_ttl_seconds", 3600),
            staleness_tolerance_seconds=data.get("staleness_tolerance_seconds", 300),
            fetch_timeout_seconds=data.get("fetch_timeout_seconds", 10.0),
            fetch_retries=data.get("fetch_retries", 3),
            backoff_seconds=data.get("backoff_seconds", 0.5),
            backchannel_timeout_seconds=data.get("backchannel_timeout_seconds", 5.0),
            verify_tls=data.get("verify_tls", True),
            sources=[MetadataSource.from_dict(s) for s in data.get("sources", [])],
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "metadata_ttl_seconds": self.metadata_ttl_seconds,
            "staleness_tolerance_seconds": self.staleness_tolerance_seconds,
            "fetch_timeout_seconds": self.fetch_timeout_seconds,
            "fetch_retries": self.fetch_retries,
            "backoff_seconds": self.backoff_seconds,
            "backchannel_timeout_seconds": self.backchannel_timeout_seconds,
            "verify_tls": self.verify_tls,
            "sources": [s.to_dict() for s in self.sources],
        }


@dataclass
class KeySettings:
    """SP key material locations (PEM files)."""

    signing_key_path: Path | None = None
    signing_cert_path: Path | None = None
    encryption_key_path: Path | None = None
    encryption_cert_path: Path | None = None
    min_rsa_key_size: int = 2048

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KeySettings:
        """Create KeySettings from a dictionary."""
        return cls(
            signing_key_path=_optional_path(data.get("signing_key_path")),
            signing_cert_path=_optional_path(data.get("signing_cert_path")),
            encryption_key_path=_optional_path(data.get("encryption_key_path")),
            encryption_cert_path=_optional_path(data.get("encryption_cert_path")),
            min_rsa_key_size=data.get("min_rsa_key_size", 2048),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        def as_str(path: Path | None) -> str | None:
            return str(path) if path else None

        return {
            "signing_key_path": as_str(self.signing_key_path),
            "signing_cert_path": as_str(self.signing_cert_path),
            "encryption_key_path": as_str(self.encryption_key_path),
            "encryption_cert_path": as_str(self.encryption_cert_path),
            "min_rsa_key_size": self.min_rsa_key_size,
        }


@dataclass
class StorageSettings:
    """Session/pending-request/replay store backend."""

    backend: str = "memory"
    database_url: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StorageSettings:
        """Create StorageSettings from a dictionary."""
        return cls(
            backend=data.get("backend", "memory"),
            database_url=data.get("database_url"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"backend": self.backend, "database_url": self.database_url}


@dataclass
class LoggingSettings:
    """Logging configuration."""

    level: str = "INFO"
    trace_enabled: bool = False
    log_file: str | None = None
    audit_file: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoggingSettings:
        """Create LoggingSettings from a dictionary."""
        return cls(
            level=data.get("level", "INFO"),
            trace_enabled=data.get("trace_enabled", False),
            log_file=data.get("log_file"),
            audit_file=data.get("audit_file"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "level": self.level,
            "trace_enabled": self.trace_enabled,
            "log_file": self.log_file,
            "audit_file": self.audit_file,
        }


@dataclass
class AppConfig:
    """Main application configuration."""

    server: ServerSettings = field(default_factory=ServerSettings)
    sp: SPSettings = field(default_factory=SPSettings)
    sessions: SessionSettings = field(default_factory=SessionSettings)
    trust: TrustSettings = field(default_factory=TrustSettings)
    keys: KeySettings = field(default_factory=KeySettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    config_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: Path | None = None) -> AppConfig:
        """Create AppConfig from a dictionary."""
        return cls(
            server=ServerSettings.from_dict(data.get("server") or {}),
            sp=SPSettings.from_dict(data.get("sp") or {}),
            sessions=SessionSettings.from_dict(data.get("sessions") or {}),
            trust=TrustSettings.from_dict(data.get("trust") or {}),
            keys=KeySettings.from_dict(data.get("keys") or {}),
            storage=StorageSettings.from_dict(data.get("storage") or {}),
            logging=LoggingSettings.from_dict(data.get("logging") or {}),
            config_path=config_path,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "server": self.server.to_dict(),
            "sp": self.sp.to_dict(),
            "sessions": self.sessions.to_dict(),
            "trust": self.trust.to_dict(),
            "keys": self.keys.to_dict(),
            "storage": self.storage.to_dict(),
            "logging": self.logging.to_dict(),
        }

    def save(self, path: Path | None = None) -> None:
        """Save configuration to a YAML file.

        Args:
            path: Path to save to. Uses config_path or default if not specified.
        """
        save_path = path or self.config_path or DEFAULT_CONFIG_FILE
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get a boolean from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _get_env_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer value for {key}: {value!r}")
        return default


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load application configuration.

    Configuration is loaded in this order (later values override earlier):
    1. Default values
    2. config.yaml file (if exists)
    3. Environment variables

    Args:
        config_path: Path to config file. Uses default if not specified.

    Returns:
        AppConfig with merged settings.
    """
    config = AppConfig()

    file_path = config_path or Path(
        os.environ.get(f"{ENV_PREFIX}CONFIG", str(DEFAULT_CONFIG_FILE))
    )
    if file_path.exists():
        try:
            with open(file_path) as f:
                data = yaml.safe_load(f) or {}
            config = AppConfig.from_dict(data, config_path=file_path)
        except (yaml.YAMLError, KeyError, TypeError) as e:
            # Invalid config file: keep defaults but say so
            logger.warning(f"Ignoring invalid config file {file_path}: {e}")

    # Server settings
    if os.environ.get(f"{ENV_PREFIX}HOST"):
        config.server.host = os.environ[f"{ENV_PREFIX}HOST"]
    config.server.port = _get_env_int(f"{ENV_PREFIX}PORT", config.server.port)
    config.server.debug = _get_env_bool(f"{ENV_PREFIX}DEBUG", config.server.debug)
    config.server.tls.enabled = _get_env_bool(f"{ENV_PREFIX}TLS_ENABLED", config.server.tls.enabled)

    # SP settings
    sp = config.sp
    if os.environ.get(f"{ENV_PREFIX}SP_ENTITY_ID"):
        sp.entity_id = os.environ[f"{ENV_PREFIX}SP_ENTITY_ID"]
    if os.environ.get(f"{ENV_PREFIX}BASE_URL"):
        sp.base_url = os.environ[f"{ENV_PREFIX}BASE_URL"]
    if os.environ.get(f"{ENV_PREFIX}IDP_ENTITY_ID"):
        sp.idp_entity_id = os.environ[f"{ENV_PREFIX}IDP_ENTITY_ID"]
    sp.allow_unsolicited = _get_env_bool(f"{ENV_PREFIX}ALLOW_UNSOLICITED", sp.allow_unsolicited)
    sp.clock_skew_seconds = _get_env_int(f"{ENV_PREFIX}CLOCK_SKEW", sp.clock_skew_seconds)

    # Session settings
    config.sessions.ttl_seconds = _get_env_int(
        f"{ENV_PREFIX}SESSION_TTL", config.sessions.ttl_seconds
    )

    # Storage settings
    if os.environ.get(f"{ENV_PREFIX}STORAGE_BACKEND"):
        config.storage.backend = os.environ[f"{ENV_PREFIX}STORAGE_BACKEND"]
    if os.environ.get(f"{ENV_PREFIX}DATABASE_URL"):
        config.storage.database_url = os.environ[f"{ENV_PREFIX}DATABASE_URL"]

    # Logging settings
    if os.environ.get(f"{ENV_PREFIX}LOG_LEVEL"):
        config.logging.level = os.environ[f"{ENV_PREFIX}LOG_LEVEL"]

    return config


def get_default_config_yaml() -> str:
    """Get the default config.yaml content as a string.

    Useful for generating example configuration files.
    """
    return """\
# AuthFlow Configuration File
# Environment variables override these settings (prefix: AUTHFLOW_)

server:
  host: "127.0.0.1"
  port: 8443
  debug: false
  tls:
    enabled: true
    auto_generate: true
    common_name: "localhost"
    days_valid: 365

sp:
  # This Service Provider's entity ID (must appear in assertion audiences)
  entity_id: "https://localhost:8443/saml/metadata"
  base_url: "https://localhost:8443"
  acs_path: "/saml/acs"
  slo_path: "/saml/slo"

  # Entity ID of the IdP used for SP-initiated login
  # idp_entity_id: "https://idp.example.com/metadata"

  sign_authn_requests: true
  want_assertions_signed: true
  want_response_signed: false

  # Accept IdP-initiated (unsolicited) responses
  allow_unsolicited: false

  # Tolerated clock difference with the IdP, in seconds
  clock_skew_seconds: 300

  # Reject incoming messages larger than this many bytes
  max_message_bytes: 262144

sessions:
  ttl_seconds: 3600
  sliding_expiry: true
  max_lifetime_seconds: 28800
  bind_ip: false
  bind_user_agent: true
  pending_request_ttl_seconds: 300

trust:
  metadata_ttl_seconds: 3600
  staleness_tolerance_seconds: 300
  fetch_timeout_seconds: 10
  fetch_retries: 3
  backoff_seconds: 0.5
  backchannel_timeout_seconds: 5
  sources: []
  #  - entity_id: "https://idp.example.com/metadata"
  #    url: "https://idp.example.com/metadata"
  #    signing_cert_path: ~/.authflow/certs/idp-metadata.crt

keys:
  # signing_key_path: ~/.authflow/certs/signing.key
  # signing_cert_path: ~/.authflow/certs/signing.crt
  # encryption_key_path: ~/.authflow/certs/encryption.key
  # encryption_cert_path: ~/.authflow/certs/encryption.crt
  min_rsa_key_size: 2048

storage:
  # memory or sql
  backend: memory
  # database_url: sqlite:///~/.authflow/authflow.db

logging:
  level: INFO
  trace_enabled: false
  # log_file: ~/.authflow/authflow.log
  # audit_file: ~/.authflow/audit.log
"""
