import re
import logging
from typing import Any, Dict, List, Optional
from ..client import as_int, dig, fetch_json, github_latest_release
from ..metrics import SnapshotBuilder
from .base import ChainPlugin, ExternalFact, IdentityState, NodeStatus, SyncState, lag

logger = logging.getLogger(__name__)

MAX_BLOCKS_BEHIND = 100
SLOT_MILLISECONDS = 400
FIREDANCER_VERSION = re.compile(r'^0\.\d+\.\d+$')
RELEASE_REPOS = {
    'agave': 'anza-xyz/agave',
    'firedancer': 'firedancer-io/firedancer',
}


class SolanaPlugin(ChainPlugin):
    name = 'solana'
    metric_prefix = 'solana'
    release_repo = RELEASE_REPOS['agave']

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.network_rpc_url = self.options.get('network_rpc_url', 'https://api.mainnet-beta.solana.com')
        self.identity: Optional[str] = self.options.get('identity')
        self.client_type: Optional[str] = None

    async def detect_client_type(self) -> str:
        """Firedancer reports a 0.x.y solana-core version, Agave 1.x and later."""
        if self.client_type:
            return self.client_type
        version = dig(await self.api.rpc('getVersion'), 'solana-core')
        if not version:
            return 'agave'
        self.client_type = 'firedancer' if FIREDANCER_VERSION.match(str(version)) else 'agave'
        logger.info(f"Detected Solana client: {self.client_type} ({version})")
        return self.client_type

    def external_facts(self) -> List[ExternalFact]:
        return [
            ExternalFact(key='latest_version', fetch=self.fetch_latest_version),
            ExternalFact(key='network_block_height', fetch=self.fetch_network_block_height, numeric=True),
        ]

    async def fetch_latest_version(self) -> Optional[str]:
        client_type = await self.detect_client_type()
        return await github_latest_release(
            self.external_session,
            RELEASE_REPOS[client_type],
            timeout=self.settings.external_timeout,
            api_base=self.github_api,
        )

    async def fetch_network_block_height(self) -> Optional[str]:
        body = await fetch_json(
            self.external_session,
            self.network_rpc_url,
            method='POST',
            payload={'jsonrpc': '2.0', 'id': 1, 'method': 'getBlockHeight'},
            timeout=self.settings.external_timeout,
        )
        height = as_int(dig(body, 'result'))
        return str(height) if height > 0 else None

    async def poll_health(self) -> bool:
        return await self.api.rpc('getHealth', timeout=self.settings.health_timeout) == 'ok'

    async def poll_sync_state(self, healthy: bool, external: Dict[str, Any]) -> SyncState:
        slot = as_int(await self.api.rpc('getSlot'))
        epoch_info = await self.api.rpc('getEpochInfo') or {}
        block_height = as_int(await self.api.rpc('getBlockHeight'))

        network_height = as_int(external.get('network_block_height'))
        behind = lag(network_height, block_height)

        return SyncState(
            local_height=block_height,
            network_height=network_height,
            behind=behind,
            is_synced=healthy and behind <= MAX_BLOCKS_BEHIND,
            details={
                'slot': slot,
                'absolute_slot': as_int(dig(epoch_info, 'absoluteSlot')),
                'slot_index': as_int(dig(epoch_info, 'slotIndex')),
                'slots_in_epoch': as_int(dig(epoch_info, 'slotsInEpoch')),
                'epoch': as_int(dig(epoch_info, 'epoch')),
            },
        )

    async def node_identity(self) -> Optional[str]:
        if self.identity:
            return self.identity
        return dig(await self.api.rpc('getIdentity'), 'identity')

    async def poll_identity_state(self) -> IdentityState:
        identity = await self.node_identity()
        if not identity:
            return IdentityState()

        accounts = await self.api.rpc('getVoteAccounts') or {}
        for bucket in ('current', 'delinquent'):
            for account in dig(accounts, bucket) or []:
                if not isinstance(account, dict) or account.get('nodePubkey') != identity:
                    continue
                return IdentityState(
                    is_validator=True,
                    stake=as_int(account.get('activatedStake')),
                    delinquent=bucket == 'delinquent',
                    details={
                        'identity': identity,
                        'last_vote': as_int(account.get('lastVote')),
                        'root_slot': as_int(account.get('rootSlot')),
                        'commission': as_int(account.get('commission')),
                    },
                )
        return IdentityState(details={'identity': identity})

    async def poll_details(self) -> Dict[str, Any]:
        peers = 0
        nodes = await self.api.rpc('getClusterNodes')
        if isinstance(nodes, list) and nodes:
            # the list includes this node
            peers = len(nodes) - 1
        if peers == 0:
            accounts = await self.api.rpc('getVoteAccounts') or {}
            peers = sum(len(dig(accounts, bucket) or []) for bucket in ('current', 'delinquent'))

        transaction_count = as_int(await self.api.rpc('getTransactionCount'))
        version = dig(await self.api.rpc('getVersion'), 'solana-core')
        client = await self.detect_client_type() if version else self.client_type
        return {
            'peers': peers,
            'transaction_count': transaction_count,
            'version': version,
            'client': client,
        }

    def describe(self, builder: SnapshotBuilder, status: NodeStatus):
        sync = status.sync
        identity = status.identity
        slot = sync.details.get('slot', 0)
        slot_index = sync.details.get('slot_index', 0)
        slots_in_epoch = sync.details.get('slots_in_epoch', 0)

        builder.gauge('node_slot', 'Current slot number', slot)
        builder.gauge('node_absolute_slot', 'Absolute slot number', sync.details.get('absolute_slot'))
        builder.gauge('node_block_height', 'Current block height', sync.local_height)
        builder.gauge('node_epoch', 'Current epoch', sync.details.get('epoch'))
        builder.gauge('node_slot_index', 'Slot index within current epoch', slot_index)
        builder.gauge('node_slots_in_epoch', 'Total slots in current epoch', slots_in_epoch)
        builder.gauge('node_slots_behind', 'Number of blocks behind the network', sync.behind)
        builder.flag('node_synced', 'Whether node is synced with cluster (1=synced, 0=syncing)', sync.is_synced)
        builder.gauge('network_block_height', 'Network block height from public RPC', sync.network_height)

        builder.flag('validator_active', 'Whether this node is an active validator (1=yes, 0=no)',
                     identity.is_validator)
        builder.flag('validator_delinquent', 'Whether validator is delinquent (1=yes, 0=no)', identity.delinquent)
        builder.gauge('validator_activated_stake_lamports', 'Activated stake in lamports', identity.stake)
        builder.gauge('validator_commission_percent', 'Vote account commission percentage',
                      identity.details.get('commission'))
        builder.gauge('validator_root_slot', 'Root slot of the vote account', identity.details.get('root_slot'))

        builder.gauge('network_peers', 'Number of cluster nodes (peers)', status.details.get('peers'))

        last_vote = identity.details.get('last_vote', 0)
        vote_latency = 0
        if identity.is_validator and last_vote > 0 and slot > 0:
            vote_latency = max(0, slot - last_vote) * SLOT_MILLISECONDS
        builder.gauge('vote_latency_ms', 'Vote latency in milliseconds (slots behind * 400ms)', vote_latency)
        builder.gauge('last_vote_slot', 'Last vote slot for this validator', last_vote)

        progress = round(slot_index * 100 / slots_in_epoch, 2) if slots_in_epoch > 0 else 0
        builder.gauge('epoch_progress_percent', 'Epoch progress percentage', progress)
        builder.counter('transaction_count', 'Total transaction count', status.details.get('transaction_count'))
        builder.info('node_client_info', 'Validator client implementation', status.details.get('client'),
                     label_name='client')
