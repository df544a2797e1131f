import json
import logging
import asyncio
import aiohttp
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

GITHUB_API = 'https://api.github.com'


def as_int(value, default: int = 0) -> int:
    """Parse an API-reported number (decimal, float or 0x hex), ``default`` if malformed."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    try:
        text = str(value).strip()
        if text.lower().startswith('0x'):
            return int(text, 16)
        return int(float(text))
    except (TypeError, ValueError, OverflowError):
        return default


def as_float(value, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if result != result or result in (float('inf'), float('-inf')):
        return default
    return result


def dig(obj: Any, *path) -> Any:
    """Walk nested dicts/lists, returning None as soon as a step is missing."""
    for step in path:
        if isinstance(obj, dict):
            obj = obj.get(step)
        elif isinstance(obj, list) and isinstance(step, int) and -len(obj) <= step < len(obj):
            obj = obj[step]
        else:
            return None
    return obj


class NodeApi:
    """Best-effort JSON access to a node's local HTTP API.

    Every call returns None (or False for probes) instead of raising, and counts
    successes and failures so a poll cycle can tell whether the node answered at all.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        token_header: str = 'Authorization',
        timeout: float = 10.0,
        health_timeout: float = 5.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.headers: Dict[str, str] = {}
        if token:
            self.headers[token_header] = token
        self._session = session
        self._owns_session = session is None
        self._closed = False
        self.succeeded = 0
        self.failed = 0

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._closed:
            raise aiohttp.ClientConnectionError('node API client is closed')
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def url(self, path: str) -> str:
        if not path:
            return self.base_url
        if path.startswith(('http://', 'https://')):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def reset_counters(self):
        self.succeeded = 0
        self.failed = 0

    def record(self, ok: bool):
        if ok:
            self.succeeded += 1
        else:
            self.failed += 1

    async def probe(self, path: str) -> bool:
        """True only for a 2xx answer within the health timeout; never retried."""
        url = self.url(path)
        try:
            async with self.session.get(
                url, headers=self.headers, timeout=aiohttp.ClientTimeout(total=self.health_timeout)
            ) as response:
                ok = 200 <= response.status < 300
                if not ok:
                    logger.warning(f"Probe {url} returned HTTP {response.status}")
                self.record(ok)
                return ok
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Probe {url} failed: {type(e).__name__}: {e}")
            self.record(False)
            return False

    async def _request_json(self, method: str, path: str, payload: Any = None,
                            timeout: Optional[float] = None) -> Any:
        url = self.url(path)
        try:
            async with self.session.request(
                method,
                url,
                json=payload,
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=timeout or self.timeout),
            ) as response:
                if response.status >= 400:
                    logger.warning(f"{method} {url} returned HTTP {response.status}")
                    self.record(False)
                    return None
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"{method} {url} failed: {type(e).__name__}: {e}")
            self.record(False)
            return None

        try:
            body = json.loads(text)
        except ValueError:
            logger.warning(f"{method} {url} returned a non-JSON body")
            self.record(False)
            return None
        self.record(True)
        return body

    async def get_json(self, path: str, timeout: Optional[float] = None) -> Any:
        return await self._request_json('GET', path, timeout=timeout)

    async def post_json(self, path: str, payload: Any, timeout: Optional[float] = None) -> Any:
        return await self._request_json('POST', path, payload=payload, timeout=timeout)

    async def rpc(self, method: str, params: Any = None, path: str = '',
                  timeout: Optional[float] = None) -> Any:
        """JSON-RPC 2.0 call; the ``result`` member, or None on any error."""
        payload = {
            'jsonrpc': '2.0',
            'id': 1,
            'method': method,
            'params': [] if params is None else params,
        }
        body = await self.post_json(path, payload, timeout=timeout)
        if not isinstance(body, dict):
            return None
        if 'error' in body:
            logger.warning(f"RPC {method} returned error: {body['error']}")
            return None
        return body.get('result')

    async def close(self):
        self._closed = True
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


async def fetch_json(session: aiohttp.ClientSession, url: str, method: str = 'GET',
                     payload: Any = None, headers: Optional[Dict[str, str]] = None,
                     timeout: float = 10.0) -> Any:
    """Fetch a third-party JSON document. Raises on transport or HTTP errors."""
    async with session.request(
        method,
        url,
        json=payload,
        headers=headers,
        timeout=aiohttp.ClientTimeout(total=timeout),
    ) as response:
        response.raise_for_status()
        return await response.json(content_type=None)


async def github_latest_release(session: aiohttp.ClientSession, repo: str,
                                timeout: float = 10.0, strip_v: bool = True,
                                api_base: str = GITHUB_API) -> Optional[str]:
    """Tag of the latest GitHub release of ``repo`` (``owner/name``), e.g. ``v1.2.3`` -> ``1.2.3``."""
    body = await fetch_json(
        session,
        f"{api_base}/repos/{repo}/releases/latest",
        headers={'Accept': 'application/vnd.github.v3+json'},
        timeout=timeout,
    )
    tag = body.get('tag_name') if isinstance(body, dict) else None
    if not tag:
        return None
    tag = str(tag).strip()
    if strip_v and tag[:1] in ('v', 'V'):
        tag = tag[1:]
    return tag or None
