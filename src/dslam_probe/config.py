"""
Configuration management for the DSLAM connectivity engine.

Settings come from environment variables (load_config) or from a YAML file
(EngineConfig.from_yaml). Both paths end in the same validated pydantic model.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import ConfigurationError
from .geography import Geography

logger = logging.getLogger(__name__)

# Sentinel values the inventory uses for "no address"
DEFAULT_ABSENT_MARKERS = ["N/A", "Non trouvé", "Erreur", "not found", "error"]

# ping output fragments that only appear on an actual echo reply (C and fr_FR locales)
DEFAULT_PING_SUCCESS_MARKERS = [
    "1 received",
    "bytes from",
    "time=",
    "1 reçus",
    "octets de",
    "temps=",
]

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class EngineConfig(BaseModel):
    """Connectivity engine configuration."""

    # ========================================================================
    # Storage
    # ========================================================================

    db_path: Path = Field(
        default=Path("/var/lib/dslam-probe/dslam.db"),
        description="SQLite database holding inventory and history"
    )

    # ========================================================================
    # Batching
    # ========================================================================

    batch_size: int = Field(
        default=8,
        ge=1,
        le=256,
        description="Devices probed concurrently per batch"
    )
    batch_delay_ms: int = Field(
        default=200,
        ge=0,
        description="Pause between batches"
    )
    retest_max_count: int = Field(
        default=100,
        ge=1,
        description="Upper bound of devices probed by one retest pass"
    )

    # ========================================================================
    # Collection
    # ========================================================================

    departments: list[str] = Field(
        default_factory=list,
        description="Departments to collect (empty = every department of the geography)"
    )
    department_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Pause between departments during collection"
    )
    inventory_path: Optional[Path] = Field(
        default=None,
        description="YAML/JSON inventory file used by the collection phase"
    )
    geography_path: Optional[Path] = Field(
        default=None,
        description="YAML department/region table (defaults to the built-in French table)"
    )

    # ========================================================================
    # Probes
    # ========================================================================

    ping_command: str = Field(default="ping")
    nc_command: str = Field(default="nc")
    ping_timeout_s: int = Field(default=2, ge=1, description="ping -W value")
    udp_timeout_s: int = Field(default=2, ge=1, description="nc -w value")
    hard_timeout_s: float = Field(
        default=3.0,
        gt=0,
        description="Kill deadline enforced independently of the tool's own timeout"
    )
    udp_port: int = Field(default=161, ge=1, le=65535, description="Management port")
    ping_success_markers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PING_SUCCESS_MARKERS)
    )
    absent_markers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ABSENT_MARKERS)
    )

    # ========================================================================
    # API / Logging
    # ========================================================================

    api_host: str = Field(default="127.0.0.1")
    api_port: int = Field(default=8085, ge=1, le=65535)
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(VALID_LOG_LEVELS)}")
        return v

    @field_validator("ping_success_markers")
    @classmethod
    def validate_markers(cls, v):
        if not v:
            raise ValueError("at least one ping success marker is required")
        return v

    @model_validator(mode="after")
    def check_hard_timeout(self):
        """The kill deadline must leave room for the tool's own timeout."""
        if self.hard_timeout_s <= max(self.ping_timeout_s, self.udp_timeout_s):
            raise ValueError("hard_timeout_s must exceed ping_timeout_s and udp_timeout_s")
        return self

    model_config = ConfigDict(validate_assignment=True)

    @property
    def batch_delay_s(self) -> float:
        return self.batch_delay_ms / 1000

    @property
    def department_delay_s(self) -> float:
        return self.department_delay_ms / 1000

    def load_geography(self) -> Geography:
        """Geography from geography_path, or the built-in table."""
        if self.geography_path:
            return Geography.from_yaml(self.geography_path)
        return Geography()

    @classmethod
    def from_yaml(cls, path: Path) -> "EngineConfig":
        """Load configuration from a YAML file."""
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        values: dict[str, Any] = {}

        if "batch" in data:
            b = data["batch"]
            _copy(b, values, size="batch_size", delay_ms="batch_delay_ms",
                  retest_max_count="retest_max_count")

        if "collection" in data:
            c = data["collection"]
            _copy(c, values, departments="departments", delay_ms="department_delay_ms")

        if "probes" in data:
            p = data["probes"]
            _copy(p, values,
                  ping_command="ping_command",
                  nc_command="nc_command",
                  ping_timeout_s="ping_timeout_s",
                  udp_timeout_s="udp_timeout_s",
                  hard_timeout_s="hard_timeout_s",
                  udp_port="udp_port",
                  success_markers="ping_success_markers",
                  absent_markers="absent_markers")

        if "paths" in data:
            p = data["paths"]
            _copy(p, values, db="db_path", inventory="inventory_path", geography="geography_path")

        if "api" in data:
            _copy(data["api"], values, host="api_host", port="api_port")

        if "log_level" in data:
            values["log_level"] = data["log_level"]

        return _build(values)


def _copy(section: dict, values: dict, **mapping: str) -> None:
    for yaml_key, field_name in mapping.items():
        if yaml_key in section:
            values[field_name] = section[yaml_key]


def _build(values: dict[str, Any]) -> EngineConfig:
    try:
        return EngineConfig(**values)
    except ValidationError as e:
        raise ConfigurationError("Invalid engine configuration", original_error=e)


def load_config() -> EngineConfig:
    """
    Load configuration from environment variables.

    Unset variables keep the model defaults.

    Raises:
        ConfigurationError: If a value is malformed or out of range
    """
    env_map = {
        "DSLAM_DB_PATH": "db_path",
        "DSLAM_BATCH_SIZE": "batch_size",
        "DSLAM_BATCH_DELAY_MS": "batch_delay_ms",
        "DSLAM_RETEST_MAX_COUNT": "retest_max_count",
        "DSLAM_DEPARTMENT_DELAY_MS": "department_delay_ms",
        "DSLAM_INVENTORY_PATH": "inventory_path",
        "DSLAM_GEOGRAPHY_PATH": "geography_path",
        "DSLAM_PING_COMMAND": "ping_command",
        "DSLAM_NC_COMMAND": "nc_command",
        "DSLAM_HARD_TIMEOUT_S": "hard_timeout_s",
        "DSLAM_UDP_PORT": "udp_port",
        "DSLAM_API_HOST": "api_host",
        "DSLAM_API_PORT": "api_port",
        "DSLAM_LOG_LEVEL": "log_level",
    }

    values: dict[str, Any] = {}
    for env_name, field_name in env_map.items():
        raw = os.environ.get(env_name)
        if raw:
            values[field_name] = raw

    if departments := os.environ.get("DSLAM_DEPARTMENTS"):
        values["departments"] = [d.strip() for d in departments.split(",") if d.strip()]

    return _build(values)
