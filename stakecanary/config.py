"""
Configuration for stakecanary.

Every setting comes from the environment. Any key may be overridden per
network by prefixing it with the upper-cased network name, e.g.
TESTNET_RPC_URL takes precedence over RPC_URL for the "testnet" network.

  export RPC_URL="http://127.0.0.1:8545"
  export ARCHIVE_RPC_URL="http://archive:8545"   # used for historical log scans
  export TARGETS="0x123...,0x456..."
  export PROVIDER_ID=3                           # or PROVIDER_ADMIN_ADDRESS=0x...
  export NETWORKS="mainnet,testnet"
"""

import json
from decimal import Decimal, InvalidOperation
import os
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Mapping, Optional, Set

from eth_utils import is_address, to_checksum_address, to_wei
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError
from .models import is_zero_address

# --- Configuration & Constants ---

DEFAULT_RPC_URL = "http://127.0.0.1:8545"
DEFAULT_DATA_DIR = os.path.join("~", ".local", "share", "stakecanary")
DEFAULT_POLL_INTERVAL_SEC = 60
DEFAULT_DEBOUNCE_SEC = 30
DEFAULT_MIN_ETH_PER_ATTESTER = "0.1"
# Used to turn the epoch duration (L2 slots) into seconds for entry queue ETAs
DEFAULT_L2_BLOCK_TIME_SEC = 30

# Blocks per eth_getLogs request; keeps responses under common provider limits
LOG_CHUNK_SIZE = 10_000
# Chunks that keep failing are bisected down to this width before giving up
MIN_SPLIT_SPAN = 500
LOG_FETCH_RETRIES = 2
LOG_FETCH_BACKOFF_SEC = 1.0

NETWORK_DEFAULTS: Dict[str, Dict] = {
    "mainnet": {
        "chain_id": 1,
        "staking_registry": "0x042dF8f42790d6943F41C25C2132400fd727f452",
        "rollup": "0x603bb2c05D474794ea97805e8De69bCcFb3bCA12",
        # StakingRegistry deployment block
        "start_block": 23786836,
    },
    "testnet": {
        "chain_id": 11155111,
        "staking_registry": "0xc3860c45e5F0b1eF3000dbF93149756f16928ADB",
        # Discovered at startup from the newest StakedWithProvider log
        "rollup": None,
        "start_block": 9595580,
    },
}


# --- Scraper config file ---

def _check_hex_address(value: str) -> str:
    if not value.startswith("0x") or len(value) != 42:
        raise ValueError(f"not a 20-byte hex address: {value}")
    return value


class ScraperAttester(BaseModel):
    address: str
    # 0x000...0 when not yet set
    coinbase: str
    publisher: str

    @field_validator("address", "coinbase", "publisher")
    @classmethod
    def check_address(cls, v):
        return _check_hex_address(v)


class ScraperConfig(BaseModel):
    network: str
    l1ChainId: Literal[1, 11155111]
    stakingProviderId: int
    stakingProviderAdmin: str
    attesters: List[ScraperAttester] = Field(default_factory=list)
    lastUpdated: str
    version: Literal["1.0"]

    @field_validator("stakingProviderAdmin")
    @classmethod
    def check_admin(cls, v):
        return _check_hex_address(v)


def load_scraper_config(path: str) -> ScraperConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return ScraperConfig.model_validate(json.load(f))
    except FileNotFoundError:
        raise ConfigError(f"Scraper config not found at {path}")
    except (json.JSONDecodeError, ValidationError) as e:
        raise ConfigError(f"Invalid scraper config at {path}: {e}") from e


# --- Helper Functions ---

def parse_targets(raw_targets: str) -> Set[str]:
    if not raw_targets:
        return set()
    targets = set()
    for t in raw_targets.split(","):
        t = t.strip()
        if not t:
            continue
        if not is_address(t):
            raise ConfigError(f"Invalid target address: {t}")
        targets.add(to_checksum_address(t))
    return targets


def parse_networks(raw: str) -> List[str]:
    networks = [n.strip().lower() for n in raw.split(",") if n.strip()]
    return list(dict.fromkeys(networks)) or ["mainnet"]


def _env(environ: Mapping[str, str], network: str, key: str, default: Optional[str] = None) -> Optional[str]:
    value = environ.get(f"{network.upper()}_{key}")
    if value is None or value == "":
        value = environ.get(key)
    return value if value not in (None, "") else default


def _int_env(environ: Mapping[str, str], network: str, key: str, default: Optional[int]) -> Optional[int]:
    raw = _env(environ, network, key)
    if raw is None:
        return default
    try:
        return int(raw, 0)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")


def _eth_env(environ: Mapping[str, str], network: str, key: str, default: str) -> int:
    raw = _env(environ, network, key, default)
    try:
        return to_wei(Decimal(raw), "ether")
    except (InvalidOperation, ValueError):
        raise ConfigError(f"{key} must be an ETH amount, got {raw!r}")


@dataclass
class NetworkConfig:
    name: str
    chain_id: int
    rpc_url: str
    archive_rpc_url: Optional[str]
    staking_registry_address: str
    rollup_address: Optional[str]
    start_block: int
    data_dir: str
    provider_id: Optional[int] = None
    provider_admin: Optional[str] = None
    targets: Set[str] = field(default_factory=set)
    # Coinbases declared in the scraper config; the scraped cache takes precedence
    configured_coinbases: Dict[str, str] = field(default_factory=dict)
    poll_interval_sec: int = DEFAULT_POLL_INTERVAL_SEC
    debounce_sec: int = DEFAULT_DEBOUNCE_SEC
    # Publisher (L1 sender) addresses from the scraper config, checked for ETH balance each poll
    publishers: List[str] = field(default_factory=list)
    min_eth_per_attester_wei: int = to_wei(Decimal(DEFAULT_MIN_ETH_PER_ATTESTER), "ether")
    l2_block_time_sec: int = DEFAULT_L2_BLOCK_TIME_SEC


def load_network_config(network: str, environ: Mapping[str, str] = os.environ) -> NetworkConfig:
    """Builds the config for one network from the environment and its optional scraper config file."""
    defaults = NETWORK_DEFAULTS.get(network, {})

    registry = _env(environ, network, "STAKING_REGISTRY_ADDRESS", defaults.get("staking_registry"))
    if not registry:
        raise ConfigError(f"[{network}] Unknown network: set STAKING_REGISTRY_ADDRESS and START_BLOCK")
    chain_id = _int_env(environ, network, "CHAIN_ID", defaults.get("chain_id"))
    if chain_id is None:
        raise ConfigError(f"[{network}] CHAIN_ID is required for networks without built-in defaults")

    rollup = _env(environ, network, "ROLLUP_ADDRESS", defaults.get("rollup"))
    admin = _env(environ, network, "PROVIDER_ADMIN_ADDRESS")
    data_dir = os.path.expanduser(_env(environ, network, "DATA_DIR", DEFAULT_DATA_DIR))

    cfg = NetworkConfig(
        name=network,
        chain_id=chain_id,
        rpc_url=_env(environ, network, "RPC_URL", DEFAULT_RPC_URL),
        archive_rpc_url=_env(environ, network, "ARCHIVE_RPC_URL"),
        staking_registry_address=to_checksum_address(registry),
        rollup_address=to_checksum_address(rollup) if rollup else None,
        start_block=_int_env(environ, network, "START_BLOCK", defaults.get("start_block", 0)),
        data_dir=data_dir,
        provider_id=_int_env(environ, network, "PROVIDER_ID", None),
        provider_admin=to_checksum_address(admin) if admin else None,
        targets=parse_targets(_env(environ, network, "TARGETS", "")),
        poll_interval_sec=_int_env(environ, network, "POLL_INTERVAL_SEC", DEFAULT_POLL_INTERVAL_SEC),
        debounce_sec=_int_env(environ, network, "DEBOUNCE_SEC", DEFAULT_DEBOUNCE_SEC),
        min_eth_per_attester_wei=_eth_env(environ, network, "MIN_ETH_PER_ATTESTER", DEFAULT_MIN_ETH_PER_ATTESTER),
        l2_block_time_sec=_int_env(environ, network, "L2_BLOCK_TIME_SEC", DEFAULT_L2_BLOCK_TIME_SEC),
    )

    scraper_path = _env(environ, network, "SCRAPER_CONFIG")
    default_path = os.path.join(data_dir, f"{network}-scrape-config.json")
    if scraper_path is None and os.path.exists(default_path):
        scraper_path = default_path
    if scraper_path:
        apply_scraper_config(cfg, load_scraper_config(scraper_path))

    return cfg


def apply_scraper_config(cfg: NetworkConfig, scraper: ScraperConfig):
    if scraper.network != cfg.name:
        raise ConfigError(f"Scraper config is for network {scraper.network!r}, expected {cfg.name!r}")
    if scraper.l1ChainId != cfg.chain_id:
        raise ConfigError(f"[{cfg.name}] Scraper config chain id {scraper.l1ChainId} != {cfg.chain_id}")
    if cfg.provider_id is None:
        cfg.provider_id = scraper.stakingProviderId
    # TARGETS from the environment win over the file's attester list
    if not cfg.targets:
        cfg.targets = {to_checksum_address(a.address) for a in scraper.attesters}
    for a in scraper.attesters:
        cfg.configured_coinbases[a.address.lower()] = a.coinbase
        if not is_zero_address(a.publisher):
            publisher = to_checksum_address(a.publisher)
            if publisher not in cfg.publishers:
                cfg.publishers.append(publisher)
