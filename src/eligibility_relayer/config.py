"""Relayer configuration.

One `RelayerConfig` is built at startup (from the environment, optionally
overlaid with a YAML file) and handed to every component that needs it.
"""

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
import logging
import os

import yaml

from .errors import InputValidation


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# env var -> (field name, converter)
_ENV_FIELDS = {
    "RNP_URL": ("registry_url", str),
    "RPC_URL": ("rpc_url", str),
    "RELAYER_PK": ("relayer_private_key", str),
    "CONTRACT_JSON": ("contract_path", Path),
    "HOST": ("host", str),
    "PORT": ("port", int),
    "REGISTRY_TIMEOUT": ("registry_timeout", float),
    "LEDGER_TIMEOUT": ("ledger_timeout", float),
    "CONFIRMATION_TIMEOUT": ("confirmation_timeout", float),
    "ACCUMULATOR_MAX_AGE": ("accumulator_max_age", float),
    "PARTICIPATION_FILE": ("participation_path", Path),
    "LOG_LEVEL": ("log_level", str),
    "ADMIN_TOKEN": ("admin_token", str),
}


@dataclass(frozen=True)
class RelayerConfig:
    registry_url: str = "http://127.0.0.1:4000"
    rpc_url: str = "http://127.0.0.1:8545"
    relayer_private_key: Optional[str] = field(default=None, repr=False)
    contract_path: Path = field(default_factory=lambda: Path("config/contract.json"))
    host: str = "127.0.0.1"
    port: int = 3000

    # seconds
    registry_timeout: float = 5.0
    ledger_timeout: float = 10.0
    confirmation_timeout: float = 120.0
    # 0 rebuilds the accumulator from a fresh registry fetch on every call
    accumulator_max_age: float = 0.0

    # required on /admin/sync-root when set
    admin_token: Optional[str] = field(default=None, repr=False)
    participation_path: Path = field(default_factory=lambda: Path("data/participation.jsonl"))
    log_level: str = "INFO"
    log_format: str = LOG_FORMAT

    def __post_init__(self):
        for name in ("registry_timeout", "ledger_timeout", "confirmation_timeout"):
            if getattr(self, name) <= 0:
                raise InputValidation(f"{name} must be positive")
        if self.accumulator_max_age < 0:
            raise InputValidation("accumulator_max_age must not be negative")
        object.__setattr__(self, "registry_url", self.registry_url.rstrip("/"))
        object.__setattr__(self, "contract_path", Path(self.contract_path))
        object.__setattr__(self, "participation_path", Path(self.participation_path))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelayerConfig":
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for var, (name, convert) in _ENV_FIELDS.items():
            raw = environ.get(var)
            if raw in (None, ""):
                continue
            try:
                values[name] = convert(raw)
            except ValueError:
                raise InputValidation(f"invalid value for {var}: {raw!r}") from None
        return cls(**values)


def load_config(
    config_path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None
) -> RelayerConfig:
    """Build the config from the environment, then overlay a YAML file if given."""
    config = RelayerConfig.from_env(environ)
    if config_path is None:
        return config

    config_path = Path(config_path)
    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise InputValidation(f"{config_path} must contain a mapping")

    known = {f.name for f in fields(RelayerConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise InputValidation(f"unknown config keys in {config_path}: {', '.join(unknown)}")
    return replace(config, **data)


def setup_logging(config: RelayerConfig) -> None:
    logging.basicConfig(format=config.log_format, level=config.log_level.upper())
