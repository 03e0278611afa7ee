from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List
import os

import yaml

from utils.errors import ConfigError


PUBLIC_APIS = {
    'testnet': [
        ('esplora', 'https://blockstream.info/testnet/api'),
        ('blockcypher', 'https://api.blockcypher.com/v1/btc/test3'),
    ],
    'mainnet': [
        ('esplora', 'https://blockstream.info/api'),
        ('blockcypher', 'https://api.blockcypher.com/v1/btc/main'),
    ],
}

DEFAULT_RPC_URLS = {
    'testnet': 'http://localhost:18332',
    'mainnet': 'http://localhost:8332',
}


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class CredentialConfig:
    coordinator_secret: str = field(
        default_factory=lambda: os.environ.get('COORDINATOR_SECRET_KEY', ''))
    serial_number_length: int = 32
    nonce_length: int = 32
    signature_algorithm: str = "sha256"
    credential_ttl_seconds: int = 3600
    proof_max_age_seconds: int = 600
    serial_prefix_length: int = 16


@dataclass
class BroadcastConfig:
    network: str = field(
        default_factory=lambda: os.environ.get('BITCOIN_NETWORK', 'testnet'))
    enabled: bool = field(
        default_factory=lambda: _env_flag('BITCOIN_BROADCAST_ENABLED'))
    rpc_url: str = field(
        default_factory=lambda: os.environ.get('BITCOIN_RPC_URL', ''))
    rpc_user: str = field(
        default_factory=lambda: os.environ.get('BITCOIN_RPC_USER', 'bitcoinrpc'))
    rpc_password: str = field(
        default_factory=lambda: os.environ.get('BITCOIN_RPC_PASS', ''))
    use_local_node: bool = True
    public_apis: List[Dict[str, str]] = field(default_factory=list)
    request_timeout: float = 30.0
    min_tx_bytes: int = 60
    max_tx_bytes: int = 100_000
    failure_threshold: int = 5
    recovery_timeout: float = 60.0

    def __post_init__(self):
        if self.network not in PUBLIC_APIS:
            raise ConfigError(f"Unsupported bitcoin network: {self.network}",
                              {'supported': sorted(PUBLIC_APIS)})
        if not self.rpc_url:
            self.rpc_url = DEFAULT_RPC_URLS[self.network]
        if not self.public_apis:
            self.public_apis = [
                {'kind': kind, 'url': url} for kind, url in PUBLIC_APIS[self.network]
            ]
        if self.min_tx_bytes <= 0 or self.max_tx_bytes < self.min_tx_bytes:
            raise ConfigError("Invalid transaction size bounds",
                              {'min_tx_bytes': self.min_tx_bytes,
                               'max_tx_bytes': self.max_tx_bytes})


@dataclass
class MonitorConfig:
    poll_interval: float = 30.0
    finality_confirmations: int = 6
    max_attempts: int = 240


@dataclass
class CoinJoinConfig:
    default_threshold: int = 2
    min_participants: int = 2
    max_participants: int = 100
    scheduler_interval: float = 30.0
    input_value_sats: int = 10_000
    output_value_sats: int = 546
    vote_weight: int = 1
    tx_version: int = 2
    lock_time: int = 0
    sequence: int = 0xffffffff

    def __post_init__(self):
        if self.default_threshold < 1:
            raise ConfigError("CoinJoin threshold must be at least 1")
        if self.max_participants < self.min_participants:
            raise ConfigError("max_participants must be >= min_participants")
        if self.default_threshold > self.max_participants:
            raise ConfigError("default_threshold cannot exceed max_participants")


@dataclass
class SystemConfig:
    credential_config: CredentialConfig = field(default_factory=CredentialConfig)
    broadcast_config: BroadcastConfig = field(default_factory=BroadcastConfig)
    monitor_config: MonitorConfig = field(default_factory=MonitorConfig)
    coinjoin_config: CoinJoinConfig = field(default_factory=CoinJoinConfig)

    log_dir: Path = field(default_factory=lambda: Path("logs"))
    log_level: str = "INFO"
    environment: str = field(
        default_factory=lambda: os.environ.get('VOTING_ENV', 'development'))
    enable_debug_mode: bool = False

    def __post_init__(self):
        self.log_dir = Path(self.log_dir)
        if self.enable_debug_mode:
            self.log_level = "DEBUG"

    @property
    def is_development(self) -> bool:
        return self.environment == 'development'


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return section


def load_config(config_path: Optional[Path] = None) -> SystemConfig:
    """Load configuration from file or return default"""
    if config_path is None:
        config_path = Path("config.yaml")

    if not Path(config_path).exists():
        return SystemConfig()

    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse config file {config_path}: {e}")

    if not isinstance(config_data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    try:
        return SystemConfig(
            credential_config=CredentialConfig(
                **_section(config_data, 'credentials')),
            broadcast_config=BroadcastConfig(
                **_section(config_data, 'broadcast')),
            monitor_config=MonitorConfig(**_section(config_data, 'monitor')),
            coinjoin_config=CoinJoinConfig(
                **_section(config_data, 'coinjoin')),
            log_dir=Path(config_data.get('log_dir', 'logs')),
            log_level=config_data.get('log_level', 'INFO'),
            environment=config_data.get(
                'environment', os.environ.get('VOTING_ENV', 'development')),
            enable_debug_mode=config_data.get('enable_debug_mode', False)
        )
    except TypeError as e:
        raise ConfigError(f"Invalid option in config file {config_path}: {e}")


def save_config(config: SystemConfig, config_path: Optional[Path] = None):
    """Save configuration to YAML file (the coordinator secret is never written)"""
    if config_path is None:
        config_path = Path("config.yaml")

    cred = config.credential_config
    bc = config.broadcast_config
    config_data = {
        'credentials': {
            'serial_number_length': cred.serial_number_length,
            'nonce_length': cred.nonce_length,
            'signature_algorithm': cred.signature_algorithm,
            'credential_ttl_seconds': cred.credential_ttl_seconds,
            'proof_max_age_seconds': cred.proof_max_age_seconds,
            'serial_prefix_length': cred.serial_prefix_length,
        },
        'broadcast': {
            'network': bc.network,
            'enabled': bc.enabled,
            'rpc_url': bc.rpc_url,
            'use_local_node': bc.use_local_node,
            'public_apis': bc.public_apis,
            'request_timeout': bc.request_timeout,
            'min_tx_bytes': bc.min_tx_bytes,
            'max_tx_bytes': bc.max_tx_bytes,
            'failure_threshold': bc.failure_threshold,
            'recovery_timeout': bc.recovery_timeout,
        },
        'monitor': {
            'poll_interval': config.monitor_config.poll_interval,
            'finality_confirmations': config.monitor_config.finality_confirmations,
            'max_attempts': config.monitor_config.max_attempts,
        },
        'coinjoin': {
            'default_threshold': config.coinjoin_config.default_threshold,
            'min_participants': config.coinjoin_config.min_participants,
            'max_participants': config.coinjoin_config.max_participants,
            'scheduler_interval': config.coinjoin_config.scheduler_interval,
            'input_value_sats': config.coinjoin_config.input_value_sats,
            'output_value_sats': config.coinjoin_config.output_value_sats,
            'vote_weight': config.coinjoin_config.vote_weight,
            'tx_version': config.coinjoin_config.tx_version,
            'lock_time': config.coinjoin_config.lock_time,
            'sequence': config.coinjoin_config.sequence,
        },
        'log_dir': str(config.log_dir),
        'log_level': config.log_level,
        'environment': config.environment,
        'enable_debug_mode': config.enable_debug_mode
    }

    Path(config_path).parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, 'w') as f:
        yaml.dump(config_data, f, default_flow_style=False)
