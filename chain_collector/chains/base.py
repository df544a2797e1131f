import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
import aiohttp
from ..client import NodeApi, as_int, github_latest_release, GITHUB_API
from ..config import Settings
from ..metrics import SnapshotBuilder

logger = logging.getLogger(__name__)


def lag(network_height: int, local_height: int) -> int:
    """Blocks/rounds/slots behind; 0 when either side is unknown or the node is ahead."""
    if network_height <= 0 or local_height <= 0:
        return 0
    return max(0, network_height - local_height)


@dataclass
class ExternalFact:
    key: str
    fetch: Callable[[], Awaitable[Optional[str]]]
    numeric: bool = False


@dataclass
class SyncState:
    local_height: int = 0
    network_height: int = 0
    behind: int = 0
    is_synced: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.behind = max(0, as_int(self.behind))


@dataclass
class IdentityState:
    is_validator: bool = False
    stake: int = 0
    delinquent: bool = False
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NodeStatus:
    """Everything read from the node in one cycle; rebuilt from scratch every time."""
    healthy: bool = False
    sync: SyncState = field(default_factory=SyncState)
    identity: IdentityState = field(default_factory=IdentityState)
    details: Dict[str, Any] = field(default_factory=dict)
    external: Dict[str, Any] = field(default_factory=dict)


class ChainPlugin(ABC):
    name: str = ''
    metric_prefix: str = ''
    token_header: str = 'Authorization'
    # GitHub repo whose latest release feeds <prefix>_latest_version_info, if any
    release_repo: Optional[str] = None

    def __init__(self, settings: Settings, api: Optional[NodeApi] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings
        self.options: Dict[str, Any] = settings.chain_options or {}
        self.api = api or NodeApi(
            settings.node_api_url,
            token=settings.node_api_token,
            token_header=self.token_header,
            timeout=settings.request_timeout,
            health_timeout=settings.health_timeout,
        )
        self.github_api = self.options.get('github_api_url', GITHUB_API)
        # session for third-party APIs (GitHub, public RPC)
        self._external_session = session
        self._closed = False

    @property
    def external_session(self) -> aiohttp.ClientSession:
        if self._closed:
            raise aiohttp.ClientConnectionError(f"{self.name} plugin is closed")
        if self._external_session is None or self._external_session.closed:
            self._external_session = aiohttp.ClientSession()
        return self._external_session

    def external_facts(self) -> List[ExternalFact]:
        return []

    @abstractmethod
    async def poll_health(self) -> bool:
        ...

    @abstractmethod
    async def poll_sync_state(self, healthy: bool, external: Dict[str, Any]) -> SyncState:
        ...

    async def poll_identity_state(self) -> IdentityState:
        return IdentityState()

    async def poll_details(self) -> Dict[str, Any]:
        return {}

    def node_version(self, status: NodeStatus) -> Optional[str]:
        return status.details.get('version')

    def latest_version(self, status: NodeStatus) -> Optional[str]:
        return status.external.get('latest_version')

    @abstractmethod
    def describe(self, builder: SnapshotBuilder, status: NodeStatus):
        """Add the chain's own metrics to ``builder`` in a fixed order."""

    def describe_versions(self, builder: SnapshotBuilder, status: NodeStatus):
        builder.info('node_version_info', f"{self.name.capitalize()} node version", self.node_version(status))
        if self.release_repo:
            builder.info(
                'latest_version_info',
                f"Latest {self.name.capitalize()} version from GitHub",
                self.latest_version(status),
            )

    async def close(self):
        self._closed = True
        await self.api.close()
        if self._external_session is not None and not self._external_session.closed:
            await self._external_session.close()

    def release_fact(self, repo: str, key: str = 'latest_version') -> ExternalFact:
        async def fetch():
            return await github_latest_release(
                self.external_session, repo, timeout=self.settings.external_timeout,
                api_base=self.github_api,
            )
        return ExternalFact(key=key, fetch=fetch)
