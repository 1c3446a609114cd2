"""
Shielded Pool - Configuration

Every tunable of a wallet session lives in one explicit PrivacyConfig with
named fields and documented defaults. Unset values resolve to defaults at
construction; call sites never supply their own fallbacks.

Environment Variables:
    SHIELDED_TREE_DEPTH=20
    SHIELDED_ROOT_HISTORY_SIZE=30
    SHIELDED_PROOF_TIMEOUT=60
    SHIELDED_ZK_PROOFS_ENABLED=true
    SHIELDED_CONFIRMATION_MAX_WAIT=120
    SHIELDED_BROADCAST_MAX_RETRIES=3
    SHIELDED_DEFAULT_MODE=public
    SHIELDED_MAX_ALIASES=5
    SHIELDED_STORAGE_BACKEND=json
    SHIELDED_STORAGE_PATH=~/.shielded_pool/notes.json
    SHIELDED_ENCRYPTION_KEY=<base64 key>
    SHIELDED_KDF_ITERATIONS=600000
    SHIELDED_LOG_LEVEL=INFO
    SHIELDED_LOG_FORMAT=console
    SHIELDED_POOLS_FILE=pools.yaml
"""

import logging
import os
from dataclasses import dataclass, field, fields
from decimal import Decimal, InvalidOperation
from typing import Any

import yaml

from exceptions import ConfigurationError
from field_utils import is_valid_address

logger = logging.getLogger(__name__)

VALID_MODES = ("public", "private")
VALID_STORAGE_BACKENDS = ("json", "memory")
VALID_LOG_FORMATS = ("json", "console")


@dataclass
class PoolConfig:
    """Static description of one fixed-denomination pool."""
    denomination: Decimal
    contract_address: str
    tree_depth: int = 20
    network: str = "ethereum"
    is_active: bool = True

    def __post_init__(self):
        try:
            self.denomination = Decimal(str(self.denomination))
        except (InvalidOperation, ValueError) as e:
            raise ConfigurationError(f"Invalid denomination {self.denomination!r}", "denomination") from e
        if self.denomination <= 0:
            raise ConfigurationError("Denomination must be positive", "denomination")
        if not is_valid_address(self.contract_address):
            raise ConfigurationError(
                f"Invalid pool contract address {self.contract_address!r}", "contract_address"
            )
        if not 1 <= int(self.tree_depth) <= 32:
            raise ConfigurationError("Pool tree depth must be 1..32", "tree_depth")

    def to_dict(self) -> dict[str, Any]:
        return {
            "denomination": str(self.denomination),
            "contract_address": self.contract_address,
            "tree_depth": self.tree_depth,
            "network": self.network,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PoolConfig":
        try:
            return cls(
                denomination=data["denomination"],
                contract_address=data["contract_address"],
                tree_depth=int(data.get("tree_depth", 20)),
                network=data.get("network", "ethereum"),
                is_active=bool(data.get("is_active", True)),
            )
        except KeyError as e:
            raise ConfigurationError(f"Pool entry missing {e.args[0]!r}", e.args[0]) from e


def default_pools() -> list[PoolConfig]:
    return [PoolConfig(denomination=Decimal("0.1"), contract_address="0x" + "1" * 40)]


@dataclass
class PrivacyConfig:
    """Session configuration for the privacy subsystem."""

    # Merkle tree
    tree_depth: int = 20
    root_history_size: int = 30

    # Proofs
    proof_timeout: float = 60.0
    zk_proofs_enabled: bool = True
    circuits_dir: str | None = None  # snarkjs artifacts; None selects the in-process backend

    # Confirmation polling
    confirmation_base_delay: float = 1.0
    confirmation_max_delay: float = 15.0
    confirmation_max_wait: float = 120.0

    # Broadcast retries
    broadcast_max_retries: int = 3
    broadcast_base_delay: float = 1.0

    # Routing
    large_amount_threshold: Decimal = Decimal("1.0")
    small_amount_threshold: Decimal = Decimal("0.01")
    min_anonymity_set: int = 100
    strong_anonymity_set: int = 1000

    # Privacy settings
    enable_privacy_mode: bool = False
    default_mode: str = "public"
    hide_balances: bool = False
    auto_create_aliases: bool = True
    max_aliases_per_user: int = 5

    # Storage
    storage_backend: str = "json"
    storage_path: str = field(
        default_factory=lambda: os.path.join(os.path.expanduser("~"), ".shielded_pool", "notes.json")
    )
    encryption_key: str | None = None
    kdf_iterations: int = 600_000

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"

    # Pools
    pools: list[PoolConfig] = field(default_factory=default_pools)

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ConfigurationError for any out-of-range value."""
        if not 1 <= self.tree_depth <= 32:
            raise ConfigurationError("tree_depth must be 1..32", "tree_depth")
        if self.root_history_size < 1:
            raise ConfigurationError("root_history_size must be positive", "root_history_size")
        if self.proof_timeout <= 0:
            raise ConfigurationError("proof_timeout must be positive", "proof_timeout")
        if self.confirmation_max_wait < 0:
            raise ConfigurationError("confirmation_max_wait cannot be negative", "confirmation_max_wait")
        if self.broadcast_max_retries < 0:
            raise ConfigurationError("broadcast_max_retries cannot be negative", "broadcast_max_retries")
        if self.default_mode not in VALID_MODES:
            raise ConfigurationError(f"default_mode must be one of {VALID_MODES}", "default_mode")
        if self.storage_backend not in VALID_STORAGE_BACKENDS:
            raise ConfigurationError(
                f"storage_backend must be one of {VALID_STORAGE_BACKENDS}", "storage_backend"
            )
        if self.log_format not in VALID_LOG_FORMATS:
            raise ConfigurationError(f"log_format must be one of {VALID_LOG_FORMATS}", "log_format")
        if self.max_aliases_per_user < 1:
            raise ConfigurationError("max_aliases_per_user must be positive", "max_aliases_per_user")
        if self.kdf_iterations < 1:
            raise ConfigurationError("kdf_iterations must be positive", "kdf_iterations")
        if self.small_amount_threshold > self.large_amount_threshold:
            raise ConfigurationError(
                "small_amount_threshold cannot exceed large_amount_threshold", "small_amount_threshold"
            )
        addresses = [p.contract_address.lower() for p in self.pools]
        if len(addresses) != len(set(addresses)):
            raise ConfigurationError("Duplicate pool contract address", "pools")

    def get_pool(self, contract_address: str) -> PoolConfig | None:
        for pool in self.pools:
            if pool.contract_address.lower() == contract_address.lower():
                return pool
        return None

    def privacy_settings(self) -> dict[str, Any]:
        return {
            "enable_privacy_mode": self.enable_privacy_mode,
            "default_mode": self.default_mode,
            "hide_balances": self.hide_balances,
            "auto_create_aliases": self.auto_create_aliases,
            "max_aliases_per_user": self.max_aliases_per_user,
            "zk_proofs_enabled": self.zk_proofs_enabled,
        }

    def to_dict(self) -> dict[str, Any]:
        """Configuration as a dict, with the encryption key masked."""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "pools":
                value = [p.to_dict() for p in value]
            elif isinstance(value, Decimal):
                value = str(value)
            result[f.name] = value
        if result.get("encryption_key"):
            result["encryption_key"] = "***"
        return result

    @classmethod
    def from_env(cls, **overrides) -> "PrivacyConfig":
        """Create configuration from SHIELDED_* environment variables."""
        values: dict[str, Any] = {}
        try:
            _env_int(values, "tree_depth", "SHIELDED_TREE_DEPTH")
            _env_int(values, "root_history_size", "SHIELDED_ROOT_HISTORY_SIZE")
            _env_float(values, "proof_timeout", "SHIELDED_PROOF_TIMEOUT")
            _env_bool(values, "zk_proofs_enabled", "SHIELDED_ZK_PROOFS_ENABLED")
            _env_str(values, "circuits_dir", "SHIELDED_CIRCUITS_DIR")
            _env_float(values, "confirmation_max_wait", "SHIELDED_CONFIRMATION_MAX_WAIT")
            _env_int(values, "broadcast_max_retries", "SHIELDED_BROADCAST_MAX_RETRIES")
            _env_str(values, "default_mode", "SHIELDED_DEFAULT_MODE")
            _env_bool(values, "enable_privacy_mode", "SHIELDED_PRIVACY_MODE")
            _env_bool(values, "hide_balances", "SHIELDED_HIDE_BALANCES")
            _env_int(values, "max_aliases_per_user", "SHIELDED_MAX_ALIASES")
            _env_str(values, "storage_backend", "SHIELDED_STORAGE_BACKEND")
            _env_str(values, "storage_path", "SHIELDED_STORAGE_PATH")
            _env_str(values, "encryption_key", "SHIELDED_ENCRYPTION_KEY")
            _env_int(values, "kdf_iterations", "SHIELDED_KDF_ITERATIONS")
            _env_str(values, "log_level", "SHIELDED_LOG_LEVEL")
            _env_str(values, "log_format", "SHIELDED_LOG_FORMAT")
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment value: {e}") from e

        pools_file = os.getenv("SHIELDED_POOLS_FILE")
        if pools_file:
            values["pools"] = load_pools_file(pools_file)

        values.update(overrides)
        return cls(**values)


def _env_str(values: dict, name: str, env: str):
    raw = os.getenv(env)
    if raw is not None and raw != "":
        values[name] = raw


def _env_int(values: dict, name: str, env: str):
    raw = os.getenv(env)
    if raw:
        values[name] = int(raw)


def _env_float(values: dict, name: str, env: str):
    raw = os.getenv(env)
    if raw:
        values[name] = float(raw)


def _env_bool(values: dict, name: str, env: str):
    raw = os.getenv(env)
    if raw:
        values[name] = raw.strip().lower() in ("true", "1", "yes", "on")


def load_pools_file(path: str) -> list[PoolConfig]:
    """
    Load a pool registry from YAML.

    Expected layout:
        pools:
          - denomination: "0.1"
            contract_address: "0x..."
            tree_depth: 20
            network: sepolia
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read pools file {path}: {e}", "pools_file") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in pools file {path}: {e}", "pools_file") from e

    entries = data.get("pools") if isinstance(data, dict) else None
    if not isinstance(entries, list) or not entries:
        raise ConfigurationError(f"Pools file {path} has no 'pools' list", "pools_file")

    pools = [PoolConfig.from_dict(entry) for entry in entries]
    logger.info(f"Loaded {len(pools)} pool(s) from {path}")
    return pools
