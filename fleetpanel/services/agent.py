import logging

import requests

from fleetpanel.errors import TransportError
from fleetpanel.models.node import NodeEndpoint

log = logging.getLogger(__name__)


class AgentClient:
    """HTTP client for the node agent API.

    Every call carries a bounded timeout. Any requests failure (timeout,
    refused connection, DNS, non-2xx answer) comes out as TransportError.
    """

    def __init__(self, api_prefix: str = '/api', session: requests.Session | None = None):
        self.api_prefix = '/' + api_prefix.strip('/') if api_prefix.strip('/') else ''
        self.session = session or requests.Session()

    def url(self, endpoint: NodeEndpoint, path: str) -> str:
        return f'http://{endpoint.address}:{endpoint.port}{self.api_prefix}/{path.lstrip("/")}'

    def request(
        self,
        endpoint: NodeEndpoint,
        method: str,
        path: str,
        data=None,
        timeout: float = 10,
        component: str = 'RemoteManager',
    ) -> requests.Response:
        headers = {'User-Agent': f'FleetPanel-{component}/1.0'}
        if endpoint.auth_token:
            headers['X-Node-Auth'] = endpoint.auth_token
        kwargs = {'headers': headers, 'timeout': timeout}
        if data is not None and method.upper() in ('POST', 'PUT'):
            kwargs['json'] = data
        try:
            response = self.session.request(method.upper(), self.url(endpoint, path), **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f'{method.upper()} {path} on {endpoint.address} failed: {e}') from e
        return response

    def health(self, endpoint: NodeEndpoint, timeout: float = 5, component: str = 'HealthMonitor') -> tuple[dict, float]:
        """GET /health. Returns (payload, response time in ms)."""
        response = self.request(endpoint, 'GET', 'health', timeout=timeout, component=component)
        return _json(response), response.elapsed.total_seconds() * 1000

    def system_stats(self, endpoint: NodeEndpoint, timeout: float = 10, component: str = 'ResourceMonitor') -> dict:
        response = self.request(endpoint, 'GET', 'system/stats', timeout=timeout, component=component)
        return _json(response)


def _json(response: requests.Response):
    try:
        return response.json()
    except ValueError:
        return {}
