from typing import Dict, Type
from ..config import Settings
from .base import ChainPlugin, ExternalFact, IdentityState, NodeStatus, SyncState, lag
from .algorand import AlgorandPlugin
from .avalanche import AvalanchePlugin
from .ethereum import EthereumPlugin
from .solana import SolanaPlugin

PLUGINS: Dict[str, Type[ChainPlugin]] = {
    'algorand': AlgorandPlugin,
    'avalanche': AvalanchePlugin,
    'ethereum': EthereumPlugin,
    'solana': SolanaPlugin,
}


def create_plugin(settings: Settings, **kwargs) -> ChainPlugin:
    return PLUGINS[settings.chain](settings, **kwargs)


__all__ = [
    'ChainPlugin',
    'ExternalFact',
    'IdentityState',
    'NodeStatus',
    'SyncState',
    'lag',
    'PLUGINS',
    'create_plugin',
]
