import logging
from typing import Any, Dict, List
from ..client import as_float, as_int, dig
from ..evm import EvmRpc
from ..metrics import SnapshotBuilder
from .base import ChainPlugin, ExternalFact, IdentityState, NodeStatus, SyncState

logger = logging.getLogger(__name__)

CHAINS = ('P', 'X', 'C')


class AvalanchePlugin(ChainPlugin):
    name = 'avalanche'
    metric_prefix = 'avalanche'
    release_repo = 'ava-labs/avalanchego'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.c_chain = EvmRpc(
            self.api.url('/ext/bc/C/rpc'),
            timeout=self.settings.request_timeout,
            health_timeout=self.settings.health_timeout,
            tracker=self.api,
        )

    def external_facts(self) -> List[ExternalFact]:
        return [self.release_fact(self.release_repo)]

    async def info(self, method: str, params: Any = None) -> Any:
        return await self.api.rpc(method, params or {}, path='/ext/info', timeout=self.settings.health_timeout)

    async def poll_health(self) -> bool:
        health = await self.api.get_json('/ext/health', timeout=self.settings.health_timeout)
        return dig(health, 'healthy') is True

    async def poll_sync_state(self, healthy: bool, external: Dict[str, Any]) -> SyncState:
        bootstrapped = {}
        for chain in CHAINS:
            result = await self.info('info.isBootstrapped', {'chain': chain})
            bootstrapped[chain] = dig(result, 'isBootstrapped') is True

        local_height = await self.c_chain.block_number()
        progress = await self.c_chain.syncing()
        if progress is None:
            syncing = False
            highest = local_height
        else:
            syncing = True
            highest = progress['highest_block']
            local_height = progress['current_block'] or local_height

        return SyncState(
            local_height=local_height,
            network_height=highest,
            behind=highest - local_height if highest > 0 and local_height > 0 else 0,
            is_synced=healthy and not syncing,
            details={'bootstrapped': bootstrapped, 'syncing': syncing},
        )

    async def poll_identity_state(self) -> IdentityState:
        node_id = dig(await self.info('info.getNodeID'), 'nodeID')
        if not node_id:
            return IdentityState()

        result = await self.api.rpc(
            'platform.getCurrentValidators',
            {'nodeIDs': [node_id]},
            path='/ext/bc/P',
        )
        validators = dig(result, 'validators') or []
        for validator in validators:
            if isinstance(validator, dict) and validator.get('nodeID') == node_id:
                return IdentityState(
                    is_validator=True,
                    stake=as_int(validator.get('stakeAmount') or validator.get('weight')),
                    details={
                        'node_id': node_id,
                        'start_time': as_int(validator.get('startTime')),
                        'end_time': as_int(validator.get('endTime')),
                    },
                )
        return IdentityState(details={'node_id': node_id})

    async def poll_details(self) -> Dict[str, Any]:
        peers = await self.info('info.peers')
        peer_count = as_int(dig(peers, 'numPeers'))
        if not peer_count and isinstance(dig(peers, 'peers'), list):
            peer_count = len(peers['peers'])

        uptime = await self.info('info.uptime')
        version = dig(await self.info('info.getNodeVersion'), 'version')
        if version:
            # "avalanchego/1.14.1" -> "1.14.1"
            version = str(version).rsplit('/', 1)[-1]

        return {
            'peers': peer_count,
            'rewarding_stake_percent': as_float(dig(uptime, 'rewardingStakePercentage')),
            'weighted_average_percent': as_float(dig(uptime, 'weightedAveragePercentage')),
            'version': version,
        }

    def describe(self, builder: SnapshotBuilder, status: NodeStatus):
        sync = status.sync
        identity = status.identity
        bootstrapped = sync.details.get('bootstrapped') or {}

        builder.labeled('chain_bootstrapped', 'Whether a chain is bootstrapped (1=yes, 0=no)', 'chain',
                        {chain: bootstrapped.get(chain, False) for chain in CHAINS})
        builder.gauge('c_chain_block_height', 'Current C-Chain block height', sync.local_height)
        builder.gauge('c_chain_highest_block', 'Highest known C-Chain block from peers', sync.network_height)
        builder.gauge('c_chain_blocks_behind', 'Number of blocks behind the network', sync.behind)
        builder.flag('c_chain_syncing', 'Whether C-Chain is currently syncing (1=syncing, 0=synced)',
                     sync.details.get('syncing'))
        builder.flag('node_synced', 'Whether node is healthy and synced (1=synced, 0=syncing)', sync.is_synced)
        builder.gauge('network_peers', 'Number of connected peers', status.details.get('peers'))

        builder.flag('validator_active', 'Whether this node is an active validator (1=yes, 0=no)',
                     identity.is_validator)
        builder.gauge('validator_stake_navax', 'Validator stake amount in nAVAX', identity.stake)
        builder.gauge('validator_start_timestamp', 'Validator start time (unix timestamp)',
                      identity.details.get('start_time'))
        builder.gauge('validator_end_timestamp', 'Validator end time (unix timestamp)',
                      identity.details.get('end_time'))

        builder.gauge('uptime_rewarding_stake_percent', 'Percentage of stake that has rewarding uptime',
                      status.details.get('rewarding_stake_percent'))
        builder.gauge('uptime_weighted_avg_percent', 'Weighted average uptime percentage',
                      status.details.get('weighted_average_percent'))

    async def close(self):
        await self.c_chain.close()
        await super().close()
