import os
import yaml
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    pass


@dataclass
class ChainDefaults:
    node_api_url: str
    listen_port: int
    legacy_url_env: str
    legacy_token_env: Optional[str] = None
    legacy_data_env: Optional[str] = None
    # files in data_dir that supply the token and API address when not configured
    token_file: Optional[str] = None
    endpoint_file: Optional[str] = None


CHAIN_DEFAULTS: Dict[str, ChainDefaults] = {
    'algorand': ChainDefaults(
        'http://localhost:8080', 9103, 'ALGORAND_API', 'ALGORAND_TOKEN', 'ALGORAND_DATA',
        token_file='algod.token', endpoint_file='algod.net',
    ),
    'avalanche': ChainDefaults('http://localhost:9650', 9101, 'AVALANCHE_RPC'),
    'solana': ChainDefaults('http://localhost:8899', 9102, 'SOLANA_RPC'),
    'ethereum': ChainDefaults('http://localhost:8545', 9104, 'ETHEREUM_RPC'),
}


@dataclass
class Settings:
    chain: str
    node_api_url: str
    listen_port: int
    data_dir: str
    metrics_file: str
    cache_file: str
    node_api_token: Optional[str] = None
    listen_host: str = '0.0.0.0'
    scrape_interval: int = 15
    external_data_interval: int = 300
    health_timeout: float = 5.0
    request_timeout: float = 10.0
    external_timeout: float = 10.0
    log_level: str = 'INFO'
    chain_options: Dict[str, Any] = field(default_factory=dict)


def _env_str(name: str) -> Optional[str]:
    raw = os.environ.get(name, '').strip()
    return raw or None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, '')
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, '')
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default


def _file_number(file_config: Dict[str, Any], key: str, default, cast=int):
    value = file_config.get(key, default)
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {value!r}")


def _read_data_file(data_dir: str, name: str) -> Optional[str]:
    path = os.path.join(data_dir, name)
    try:
        with open(path, 'r') as f:
            content = f.read().strip()
    except OSError:
        return None
    if content:
        logger.info(f"Using {path}")
    return content or None


def _load_file(config_path: Optional[str]) -> Dict[str, Any]:
    if not config_path or not os.path.exists(config_path):
        return {}
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    logger.info(f"Configuration loaded from {config_path}")
    # accept both a flat file and the nested `settings:` block
    settings = config.get('settings')
    if isinstance(settings, dict):
        merged = dict(config)
        merged.pop('settings')
        merged.update(settings)
        return merged
    return config


class Config:
    """Collector configuration: optional YAML file, overridden by environment variables."""

    def __init__(self, config_path: Optional[str] = None):
        file_config = _load_file(config_path)

        chain = (_env_str('CHAIN') or file_config.get('chain') or '').lower()
        if chain not in CHAIN_DEFAULTS:
            raise ConfigError(
                f"Unknown chain {chain!r}, expected one of: {', '.join(sorted(CHAIN_DEFAULTS))}"
            )
        defaults = CHAIN_DEFAULTS[chain]

        data_dir = _env_str('DATA_DIR') or file_config.get('data_dir')
        if not data_dir and defaults.legacy_data_env:
            data_dir = _env_str(defaults.legacy_data_env)
        data_dir = data_dir or f"/var/lib/{chain}"

        node_api_url = (
            _env_str('NODE_API_URL')
            or _env_str(defaults.legacy_url_env)
            or file_config.get('node_api_url')
        )
        if not node_api_url and defaults.endpoint_file:
            # algod.net holds a bare host:port
            endpoint = _read_data_file(data_dir, defaults.endpoint_file)
            if endpoint:
                node_api_url = endpoint if '://' in endpoint else f"http://{endpoint}"
        node_api_url = node_api_url or defaults.node_api_url

        token = _env_str('NODE_API_TOKEN') or file_config.get('node_api_token')
        if not token and defaults.legacy_token_env:
            token = _env_str(defaults.legacy_token_env)
        if not token and defaults.token_file:
            token = _read_data_file(data_dir, defaults.token_file)

        chain_options = file_config.get('chain_options') or {}
        if not isinstance(chain_options, dict):
            raise ConfigError("chain_options must be a mapping")

        self.settings = Settings(
            chain=chain,
            node_api_url=node_api_url.rstrip('/'),
            node_api_token=token,
            data_dir=data_dir,
            listen_host=_env_str('LISTEN_HOST') or file_config.get('listen_host', '0.0.0.0'),
            listen_port=_env_int('LISTEN_PORT', _file_number(file_config, 'listen_port', defaults.listen_port)),
            scrape_interval=_env_int('SCRAPE_INTERVAL', _file_number(file_config, 'scrape_interval', 15)),
            external_data_interval=_env_int(
                'EXTERNAL_DATA_INTERVAL', _file_number(file_config, 'external_data_interval', 300)
            ),
            metrics_file=_env_str('METRICS_FILE')
            or file_config.get('metrics_file', f"/tmp/{chain}_collector_metrics.prom"),
            cache_file=_env_str('CACHE_FILE')
            or file_config.get('cache_file', f"/tmp/{chain}_external_data.cache"),
            health_timeout=_env_float('HEALTH_TIMEOUT', _file_number(file_config, 'health_timeout', 5.0, float)),
            request_timeout=_env_float('REQUEST_TIMEOUT', _file_number(file_config, 'request_timeout', 10.0, float)),
            external_timeout=_env_float('EXTERNAL_TIMEOUT', _file_number(file_config, 'external_timeout', 10.0, float)),
            log_level=(_env_str('LOG_LEVEL') or file_config.get('log_level', 'INFO')).upper(),
            chain_options=chain_options,
        )

        if self.settings.scrape_interval <= 0:
            raise ConfigError("scrape_interval must be positive")
        if self.settings.external_data_interval <= 0:
            raise ConfigError("external_data_interval must be positive")
        if not 0 < self.settings.listen_port < 65536:
            raise ConfigError(f"listen_port out of range: {self.settings.listen_port}")

