"""
Remote execution channel.

"Run this operation against node N": picks the HTTP agent API or SSH based
on the node's configured transport. Over SSH only liveness/stats and the
server listing exist; everything else is HTTP-only and raises
UnsupportedTransportError on SSH nodes.
"""
from fleetpanel.errors import UnsupportedTransportError
from fleetpanel.models.node import NodeEndpoint, TRANSPORT_SSH
from fleetpanel.services.agent import AgentClient
from fleetpanel.services.ssh import SSHManager


class RemoteExecutionChannel:

    def __init__(self, agent: AgentClient, ssh: SSHManager, timeout: float = 10):
        self.agent = agent
        self.ssh = ssh
        self.timeout = timeout

    # -- probes used by the monitors ------------------------------------

    def http_health(self, endpoint: NodeEndpoint, timeout: float = 5, component: str = 'HealthMonitor'):
        return self.agent.health(endpoint, timeout=timeout, component=component)

    def http_stats(self, endpoint: NodeEndpoint, timeout: float = 5, component: str = 'HealthMonitor') -> dict:
        return self.agent.system_stats(endpoint, timeout=timeout, component=component)

    def ssh_stats(self, endpoint: NodeEndpoint) -> dict:
        return self.ssh.get_system_stats(endpoint)

    # -- transport-aware operations ---------------------------------------

    def system_stats(self, endpoint: NodeEndpoint) -> dict:
        if endpoint.transport == TRANSPORT_SSH:
            return self.ssh.get_system_stats(endpoint)
        return self.agent.system_stats(endpoint, timeout=self.timeout, component='RemoteManager')

    def list_servers(self, endpoint: NodeEndpoint) -> list:
        if endpoint.transport == TRANSPORT_SSH:
            return self.ssh.list_servers(endpoint)
        return self.call(endpoint, 'GET', 'servers')['data']

    def call(self, endpoint: NodeEndpoint, method: str, path: str, data=None) -> dict:
        """HTTP-only agent call. Returns {'status': <http status>, 'data': <json body>}."""
        if endpoint.transport == TRANSPORT_SSH:
            raise UnsupportedTransportError(
                f'{method.upper()} {path} is not available over SSH (node {endpoint.name})'
            )
        response = self.agent.request(endpoint, method, path, data=data, timeout=self.timeout)
        try:
            body = response.json()
        except ValueError:
            body = response.text
        return {'status': response.status_code, 'data': body}
