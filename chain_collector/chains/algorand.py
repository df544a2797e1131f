import logging
from typing import Any, Dict, Iterable, List, Optional
from ..client import as_int, dig, fetch_json
from ..metrics import SnapshotBuilder
from .base import ChainPlugin, ExternalFact, IdentityState, NodeStatus, SyncState, lag

logger = logging.getLogger(__name__)

# one round takes roughly 3.3s
ROUND_NANOSECONDS = 3_300_000_000
P2P_PORTS = (4160, 4161)
TCP_ESTABLISHED = '01'


def count_established(ports: Iterable[int], tables: Iterable[str] = ('/proc/net/tcp', '/proc/net/tcp6')) -> int:
    """Established TCP connections with either end on one of ``ports``."""
    wanted = set(ports)
    count = 0
    for table in tables:
        try:
            with open(table, 'r') as f:
                lines = f.readlines()[1:]
        except OSError:
            continue
        for line in lines:
            fields = line.split()
            if len(fields) < 4 or fields[3] != TCP_ESTABLISHED:
                continue
            try:
                local_port = int(fields[1].rsplit(':', 1)[1], 16)
                remote_port = int(fields[2].rsplit(':', 1)[1], 16)
            except (IndexError, ValueError):
                continue
            if local_port in wanted or remote_port in wanted:
                count += 1
    return count


class AlgorandPlugin(ChainPlugin):
    name = 'algorand'
    metric_prefix = 'algorand'
    token_header = 'X-Algo-API-Token'
    release_repo = 'algorand/go-algorand'

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.network_api_url = self.options.get('network_api_url', 'https://mainnet-api.algonode.cloud').rstrip('/')
        self.indexer_url = self.options.get('indexer_url', 'https://mainnet-idx.algonode.cloud').rstrip('/')
        self.peer_tables = self.options.get('peer_tables', ('/proc/net/tcp', '/proc/net/tcp6'))

    def external_facts(self) -> List[ExternalFact]:
        return [
            self.release_fact(self.release_repo),
            ExternalFact(key='network_round', fetch=self.fetch_network_round, numeric=True),
        ]

    async def fetch_network_round(self) -> Optional[str]:
        timeout = self.settings.external_timeout
        try:
            status = await fetch_json(self.external_session, f"{self.network_api_url}/v2/status", timeout=timeout)
            round_ = as_int(dig(status, 'last-round'))
            if round_ > 0:
                return str(round_)
        except Exception as e:
            logger.warning(f"Public Algorand API unavailable: {type(e).__name__}: {e}")

        health = await fetch_json(self.external_session, f"{self.indexer_url}/health", timeout=timeout)
        round_ = as_int(dig(health, 'round'))
        return str(round_) if round_ > 0 else None

    async def poll_health(self) -> bool:
        return await self.api.probe('/health')

    async def poll_sync_state(self, healthy: bool, external: Dict[str, Any]) -> SyncState:
        ready = await self.api.probe('/ready')
        status = await self.api.get_json('/v2/status') or {}

        last_round = as_int(dig(status, 'last-round'))
        catchup_time = as_int(dig(status, 'catchup-time'))
        time_since_last_round = as_int(dig(status, 'time-since-last-round'))

        network_round = as_int(external.get('network_round'))
        if network_round > 0:
            behind = lag(network_round, last_round)
        elif catchup_time > 0:
            # no network view, estimate from how long catch-up has been running
            behind = max(1, catchup_time // ROUND_NANOSECONDS)
        else:
            behind = 0

        return SyncState(
            local_height=last_round,
            network_height=network_round,
            behind=behind,
            is_synced=healthy and ready and catchup_time == 0,
            details={
                'ready': ready,
                'catchup_time': catchup_time,
                'time_since_last_round': time_since_last_round,
            },
        )

    async def poll_identity_state(self) -> IdentityState:
        keys = await self.api.get_json('/v2/participation')
        if not isinstance(keys, list) or not keys:
            return IdentityState(details={'participation_key': False})

        key = keys[0] if isinstance(keys[0], dict) else {}
        details = {
            'participation_key': True,
            'valid_first': as_int(dig(key, 'key', 'vote-first-valid') or key.get('effective-first-valid')),
            'valid_last': as_int(dig(key, 'key', 'vote-last-valid') or key.get('effective-last-valid')),
        }
        address = key.get('address')
        if not address:
            return IdentityState(details=details)

        account = await self.api.get_json(f"/v2/accounts/{address}?exclude=all") or {}
        return IdentityState(
            is_validator=dig(account, 'status') == 'Online',
            stake=as_int(dig(account, 'amount')),
            details=details,
        )

    async def poll_details(self) -> Dict[str, Any]:
        supply = await self.api.get_json('/v2/ledger/supply') or {}
        versions = await self.api.get_json('/versions') or {}

        version = None
        build = dig(versions, 'build')
        if isinstance(build, dict):
            patch = build.get('build_number', build.get('patch'))
            version = f"{as_int(build.get('major'))}.{as_int(build.get('minor'))}.{as_int(patch)}"

        return {
            'total_money': as_int(dig(supply, 'total-money')),
            'online_money': as_int(dig(supply, 'online-money')),
            'peers': count_established(P2P_PORTS, self.peer_tables),
            'version': version,
        }

    def describe(self, builder: SnapshotBuilder, status: NodeStatus):
        sync = status.sync
        identity = status.identity
        details = status.details

        builder.flag('node_ready', 'Whether the node is ready and fully synced (1=ready, 0=not ready)',
                     sync.details.get('ready'))
        builder.gauge('node_last_round', 'Last committed round number', sync.local_height)
        builder.gauge('node_catchup_time_ns', 'Time spent catching up in nanoseconds (0 = synced)',
                      sync.details.get('catchup_time'))
        builder.gauge('node_time_since_last_round_ns', 'Time since last round in nanoseconds',
                      sync.details.get('time_since_last_round'))
        builder.flag('node_synced', 'Whether node is synced with network (1=synced, 0=syncing)', sync.is_synced)
        builder.gauge('network_round', 'Network round from public API', sync.network_height)
        builder.gauge('node_rounds_behind', 'Rounds behind the network (network_round - last_round)', sync.behind)

        builder.gauge('ledger_total_money_microalgos', 'Total money supply in microAlgos',
                      details.get('total_money'))
        builder.gauge('ledger_online_money_microalgos',
                      'Online money (participating in consensus) in microAlgos', details.get('online_money'))
        builder.gauge('network_peers', 'Number of connected peers', details.get('peers'))

        builder.flag('participation_key_active', 'Whether node has an active participation key (1=yes, 0=no)',
                     identity.details.get('participation_key'))
        builder.gauge('participation_key_valid_first', 'First valid round for participation key',
                      identity.details.get('valid_first'))
        builder.gauge('participation_key_valid_last', 'Last valid round for participation key',
                      identity.details.get('valid_last'))
        builder.flag('participation_account_online',
                     'Whether the participating account is registered online (1=yes, 0=no)', identity.is_validator)
        builder.gauge('participation_account_microalgos', 'Balance of the participating account in microAlgos',
                      identity.stake)
