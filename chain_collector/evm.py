import logging
import asyncio
import aiohttp
from typing import Any, Dict, Optional
from web3 import AsyncWeb3
from web3.providers import AsyncHTTPProvider
from .client import NodeApi, as_int

logger = logging.getLogger(__name__)


class EvmRpc:
    """Ethereum-style JSON-RPC endpoint (Ethereum execution clients, Avalanche C-Chain)."""

    def __init__(self, rpc_url: str, timeout: float = 10.0, health_timeout: float = 5.0,
                 tracker: Optional[NodeApi] = None, headers: Optional[Dict[str, str]] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.tracker = tracker
        request_kwargs: Dict[str, Any] = {'timeout': aiohttp.ClientTimeout(total=timeout)}
        if headers:
            # custom headers replace web3's defaults, so the JSON content type is restated
            request_kwargs['headers'] = {'Content-Type': 'application/json', **headers}
        # one attempt per call, the next poll cycle is the retry
        provider = AsyncHTTPProvider(
            rpc_url,
            request_kwargs=request_kwargs,
            exception_retry_configuration=None,
        )
        self.w3 = AsyncWeb3(provider)

    def _record(self, ok: bool):
        if self.tracker is not None:
            self.tracker.record(ok)

    async def call(self, method: str, params: Optional[list] = None,
                   timeout: Optional[float] = None) -> Any:
        """Raw JSON-RPC call through the web3 provider; the result, or None on any failure."""
        try:
            response = await asyncio.wait_for(
                self.w3.provider.make_request(method, params or []),
                timeout or self.timeout,
            )
        except Exception as e:
            logger.warning(f"{method} on {self.rpc_url} failed: {type(e).__name__}: {e}")
            self._record(False)
            return None

        if not isinstance(response, dict) or 'result' not in response:
            error = response.get('error') if isinstance(response, dict) else response
            logger.warning(f"{method} on {self.rpc_url} returned no result: {error}")
            self._record(False)
            return None
        self._record(True)
        return response['result']

    async def is_alive(self) -> bool:
        return await self.call('eth_blockNumber', timeout=self.health_timeout) is not None

    async def block_number(self) -> int:
        return as_int(await self.call('eth_blockNumber'))

    async def syncing(self) -> Optional[Dict[str, int]]:
        """None when the node reports it is not syncing, else current/highest block."""
        result = await self.call('eth_syncing')
        if not isinstance(result, dict):
            return None
        return {
            'current_block': as_int(result.get('currentBlock')),
            'highest_block': as_int(result.get('highestBlock')),
            'starting_block': as_int(result.get('startingBlock')),
        }

    async def peer_count(self) -> int:
        return as_int(await self.call('net_peerCount'))

    async def client_version(self) -> Optional[str]:
        result = await self.call('web3_clientVersion')
        return str(result) if result else None

    async def close(self):
        disconnect = getattr(self.w3.provider, 'disconnect', None)
        if disconnect is not None:
            await disconnect()
