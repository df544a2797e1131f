import logging
from typing import Any, Dict, List, Optional, Tuple
from ..client import as_int, dig, fetch_json
from ..evm import EvmRpc
from ..metrics import SnapshotBuilder
from .base import ChainPlugin, ExternalFact, IdentityState, NodeStatus, SyncState, lag

logger = logging.getLogger(__name__)

BESU_REPO = 'hyperledger/besu'
TEKU_REPO = 'Consensys/teku'
ETHERSCAN_BLOCK_NUMBER = 'https://api.etherscan.io/api?module=proxy&action=eth_blockNumber'
PUBLIC_RPC = 'https://ethereum-rpc.publicnode.com'


def split_client_version(raw: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """'besu/v24.12.2/linux-x86_64/openjdk' -> ('besu', '24.12.2')."""
    if not raw:
        return None, None
    parts = str(raw).split('/')
    if len(parts) < 2:
        return None, parts[0].lstrip('v') or None
    return parts[0] or None, parts[1].lstrip('v') or None


class EthereumPlugin(ChainPlugin):
    name = 'ethereum'
    metric_prefix = 'ethereum'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.beacon_url: Optional[str] = (self.options.get('beacon_url') or '').rstrip('/') or None
        self.validator_pubkeys: List[str] = list(self.options.get('validator_pubkeys') or [])
        self.sync_threshold = as_int(self.options.get('sync_threshold'), 5)
        self.etherscan_url = self.options.get('etherscan_url', ETHERSCAN_BLOCK_NUMBER)
        self.public_rpc_url = self.options.get('public_rpc_url', PUBLIC_RPC)
        self.execution = EvmRpc(
            self.settings.node_api_url,
            timeout=self.settings.request_timeout,
            health_timeout=self.settings.health_timeout,
            tracker=self.api,
            headers=self.api.headers,
        )

    def external_facts(self) -> List[ExternalFact]:
        return [
            self.release_fact(BESU_REPO, key='besu_latest_version'),
            self.release_fact(TEKU_REPO, key='teku_latest_version'),
            ExternalFact(key='network_block_height', fetch=self.fetch_network_block_height, numeric=True),
        ]

    async def fetch_network_block_height(self) -> Optional[str]:
        timeout = self.settings.external_timeout
        try:
            body = await fetch_json(self.external_session, self.etherscan_url, timeout=timeout)
            height = as_int(dig(body, 'result'))
            if height > 0:
                return str(height)
        except Exception as e:
            logger.warning(f"Etherscan unavailable: {type(e).__name__}: {e}")

        body = await fetch_json(
            self.external_session,
            self.public_rpc_url,
            method='POST',
            payload={'jsonrpc': '2.0', 'method': 'eth_blockNumber', 'params': [], 'id': 1},
            timeout=timeout,
        )
        height = as_int(dig(body, 'result'))
        return str(height) if height > 0 else None

    def beacon(self, path: str) -> str:
        return f"{self.beacon_url}{path}"

    async def poll_health(self) -> bool:
        healthy = await self.execution.is_alive()
        if healthy and self.beacon_url:
            healthy = await self.api.probe(self.beacon('/eth/v1/node/health'))
        return healthy

    async def poll_sync_state(self, healthy: bool, external: Dict[str, Any]) -> SyncState:
        local_height = await self.execution.block_number()
        progress = await self.execution.syncing()
        network_height = as_int(external.get('network_block_height'))
        syncing = progress is not None
        if syncing:
            local_height = progress['current_block'] or local_height
            network_height = max(network_height, progress['highest_block'])

        behind = lag(network_height, local_height)
        details: Dict[str, Any] = {'syncing': syncing}

        if self.beacon_url:
            beacon_sync = dig(await self.api.get_json(self.beacon('/eth/v1/node/syncing')), 'data') or {}
            details.update({
                'head_slot': as_int(beacon_sync.get('head_slot')),
                'sync_distance': as_int(beacon_sync.get('sync_distance')),
                'beacon_syncing': beacon_sync.get('is_syncing') is True,
            })

        return SyncState(
            local_height=local_height,
            network_height=network_height,
            behind=behind,
            is_synced=(
                healthy
                and not syncing
                and not details.get('beacon_syncing', False)
                and behind <= self.sync_threshold
            ),
            details=details,
        )

    async def poll_identity_state(self) -> IdentityState:
        if not self.beacon_url or not self.validator_pubkeys:
            return IdentityState()

        ids = ','.join(self.validator_pubkeys)
        body = await self.api.get_json(self.beacon(f"/eth/v1/beacon/states/head/validators?id={ids}"))
        validators = [v for v in dig(body, 'data') or [] if isinstance(v, dict)]
        active = [v for v in validators if str(v.get('status', '')).startswith('active')]
        slashed = any(dig(v, 'validator', 'slashed') is True for v in validators)
        return IdentityState(
            is_validator=bool(active),
            stake=sum(as_int(v.get('balance')) for v in validators),
            delinquent=slashed,
            details={'active_count': len(active), 'known_count': len(validators)},
        )

    async def poll_details(self) -> Dict[str, Any]:
        client, version = split_client_version(await self.execution.client_version())
        details = {
            'peers': await self.execution.peer_count(),
            'client': client,
            'version': version,
        }
        if self.beacon_url:
            peers = dig(await self.api.get_json(self.beacon('/eth/v1/node/peer_count')), 'data', 'connected')
            raw_version = dig(await self.api.get_json(self.beacon('/eth/v1/node/version')), 'data', 'version')
            consensus_client, consensus_version = split_client_version(raw_version)
            details.update({
                'consensus_peers': as_int(peers),
                'consensus_client': consensus_client,
                'consensus_version': consensus_version,
            })
        return details

    def describe(self, builder: SnapshotBuilder, status: NodeStatus):
        sync = status.sync
        identity = status.identity
        details = status.details

        builder.info('besu_latest_version_info', 'Latest Besu version from GitHub',
                     status.external.get('besu_latest_version'))
        builder.info('teku_latest_version_info', 'Latest Teku version from GitHub',
                     status.external.get('teku_latest_version'))
        builder.gauge('network_block_height', 'Network block height from public API', sync.network_height)

        builder.gauge('node_block_number', 'Current execution client block number', sync.local_height)
        builder.gauge('node_blocks_behind', 'Number of blocks behind the network', sync.behind)
        builder.flag('node_syncing', 'Whether the execution client is syncing (1=syncing, 0=synced)',
                     sync.details.get('syncing'))
        builder.flag('node_synced', 'Whether node is synced with network (1=synced, 0=syncing)', sync.is_synced)
        builder.gauge('network_peers', 'Number of execution client peers', details.get('peers'))
        builder.info('execution_client_info', 'Execution client implementation', details.get('client'),
                     label_name='client')

        if self.beacon_url:
            builder.gauge('consensus_head_slot', 'Beacon node head slot', sync.details.get('head_slot'))
            builder.gauge('consensus_sync_distance', 'Beacon node sync distance in slots',
                          sync.details.get('sync_distance'))
            builder.flag('consensus_syncing', 'Whether the beacon node is syncing (1=syncing, 0=synced)',
                         sync.details.get('beacon_syncing'))
            builder.gauge('consensus_peers', 'Number of beacon node peers', details.get('consensus_peers'))
            builder.info('consensus_version_info', 'Beacon node version', details.get('consensus_version'))

        if self.validator_pubkeys:
            builder.flag('validator_active', 'Whether any configured validator is active (1=yes, 0=no)',
                         identity.is_validator)
            builder.gauge('validator_active_count', 'Number of configured validators that are active',
                          identity.details.get('active_count'))
            builder.gauge('validator_balance_gwei', 'Total balance of configured validators in gwei',
                          identity.stake)
            builder.flag('validator_slashed', 'Whether any configured validator is slashed (1=yes, 0=no)',
                         identity.delinquent)

    async def close(self):
        await self.execution.close()
        await super().close()
