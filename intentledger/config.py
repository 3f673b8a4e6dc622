"""
Configuration for an intentledger node.

Values come from keyword arguments, from ``INTENTLEDGER_*`` environment
variables, or from a TOML file. Every field is validated by pydantic.
"""
import logging
import os
from typing import Any, Dict, FrozenSet, Optional

import tomli
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "INTENTLEDGER_"


class LedgerConfig(BaseModel):
    """Tunable limits for validation, gossip and matching."""

    # Predicate executor
    vp_step_quota: int = Field(100_000, gt=0)
    vp_time_quota_ms: int = Field(2_000, gt=0)
    vp_workers: int = Field(4, ge=1)
    short_circuit: bool = True

    # Transaction validator / state store
    max_restage_attempts: int = Field(3, ge=1)
    snapshot_retention: int = Field(64, ge=1)

    # Gossip
    gossip_fan_out: int = Field(4, ge=1)
    gossip_queue_size: int = Field(256, ge=1)
    gossip_seen_ttl_s: int = Field(3600, gt=0)

    # Matching engine
    max_cycle_length: int = Field(4, ge=2)
    max_match_candidates: int = Field(512, ge=1)
    match_interval_s: float = Field(1.0, gt=0)

    # Front-running guard
    commitment_ttl_blocks: int = Field(16, ge=1)
    reveal_delay_blocks: int = Field(1, ge=0)
    require_commitment_for: FrozenSet[str] = frozenset({"settle_match"})

    model_config = {"frozen": True}

    @field_validator("require_commitment_for", mode="before")
    @classmethod
    def _split_programs(cls, value: Any) -> Any:
        if isinstance(value, str):
            return frozenset(p.strip() for p in value.split(",") if p.strip())
        return value

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "LedgerConfig":
        """
        Build a config from ``INTENTLEDGER_<FIELD>`` environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ``
            **overrides: Explicit values that win over the environment

        Returns:
            Validated LedgerConfig

        Raises:
            ConfigError: If a variable holds an invalid value
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            env_name = ENV_PREFIX + name.upper()
            if env_name in environ:
                values[name] = environ[env_name]
        values.update(overrides)
        return cls._build(values, source="environment")

    @classmethod
    def from_toml(cls, path: str) -> "LedgerConfig":
        """
        Load config from a TOML file.

        Either a ``[tool.intentledger]`` table (inside pyproject.toml) or
        top-level keys are accepted.
        """
        try:
            with open(path, "rb") as f:
                data = tomli.load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except tomli.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {path}: {e}") from e

        table = data.get("tool", {}).get("intentledger", data)
        unknown = set(table) - set(cls.model_fields)
        if unknown:
            logger.warning("Ignoring unknown config keys in %s: %s", path, sorted(unknown))
        values = {k: v for k, v in table.items() if k in cls.model_fields}
        return cls._build(values, source=path)

    @classmethod
    def _build(cls, values: Dict[str, Any], source: str) -> "LedgerConfig":
        try:
            config = cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration from {source}: {e}") from e
        logger.debug("Loaded ledger config from %s", source)
        return config
