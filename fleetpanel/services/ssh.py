import base64
import hashlib
import io
import logging
import os
import socket

import paramiko
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from fleetpanel.errors import HostKeyUnverifiedError, TransportError
from fleetpanel.models.node import NodeEndpoint

log = logging.getLogger(__name__)

# One exec collects everything the stats probe needs. Each section is
# introduced by an '@@<name>' marker line so a failing command only blanks
# its own section.
_STATS_COMMAND = (
    "echo @@cpu1; head -1 /proc/stat; "
    "sleep 0.5; "
    "echo @@cpu2; head -1 /proc/stat; "
    "echo @@mem; free -b | awk '/^Mem:/{print $2,$7}'; "
    "echo @@swap; free -b | awk '/^Swap:/{print $2,$4}'; "
    "echo @@uptime; cut -d' ' -f1 /proc/uptime; "
    "echo @@cores; nproc; "
    "echo @@host; hostname; "
    "echo @@disk; df -B1 --output=source,target,fstype,size,used,avail,pcent / | tail -n 1"
)

_DOCKER_PS_COMMAND = "docker ps --format '{{.ID}}|{{.Names}}|{{.Status}}|{{.Image}}' || echo 'no-docker'"


def host_key_fingerprint(key: paramiko.PKey) -> str:
    """OpenSSH-style 'SHA256:<base64, unpadded>' fingerprint of a host key."""
    digest = hashlib.sha256(key.asbytes()).digest()
    return 'SHA256:' + base64.b64encode(digest).decode().rstrip('=')


class _FingerprintPolicy(paramiko.MissingHostKeyPolicy):
    """Accepts a host key only if it matches the node's trusted fingerprint."""

    def __init__(self, endpoint: NodeEndpoint):
        self.endpoint = endpoint

    def missing_host_key(self, client, hostname, key):
        fingerprint = host_key_fingerprint(key)
        if fingerprint == self.endpoint.host_key:
            client.get_host_keys().add(hostname, key.get_name(), key)
            return
        raise HostKeyUnverifiedError(self.endpoint.address, fingerprint, key.get_name())


def _load_private_key(text: str) -> paramiko.PKey:
    for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_cls.from_private_key(io.StringIO(text))
        except paramiko.SSHException:
            continue
    raise TransportError('Unsupported or invalid SSH private key')


def _parse_cpu_line(line: str) -> list[int]:
    return [int(x) for x in line.split()[1:]]


def _sections(stdout: str) -> dict[str, list[str]]:
    sections: dict[str, list[str]] = {}
    current = None
    for line in stdout.splitlines():
        if line.startswith('@@'):
            current = line[2:].strip()
            sections[current] = []
        elif current is not None and line.strip():
            sections[current].append(line.strip())
    return sections


def parse_stats_output(stdout: str) -> dict:
    """Turns the output of the stats command into an agent-style stats payload."""
    sections = _sections(stdout)
    stats: dict = {'platform': 'linux'}

    cpu1, cpu2 = sections.get('cpu1'), sections.get('cpu2')
    if cpu1 and cpu2:
        v1 = _parse_cpu_line(cpu1[0])
        v2 = _parse_cpu_line(cpu2[0])
        delta = [v2[i] - v1[i] for i in range(min(len(v1), len(v2)))]
        idle = delta[3] if len(delta) > 3 else 0
        total = sum(delta)
        stats['cpu'] = round(100.0 * (total - idle) / total, 1) if total > 0 else 0.0
    else:
        stats['cpu'] = 0.0

    mem = (sections.get('mem') or [''])[0].split()
    if len(mem) == 2:
        stats['totalmem'], stats['freemem'] = int(mem[0]), int(mem[1])

    swap = (sections.get('swap') or [''])[0].split()
    if len(swap) == 2:
        stats['swapTotal'], stats['swapFree'] = int(swap[0]), int(swap[1])

    if sections.get('uptime'):
        stats['uptime'] = float(sections['uptime'][0])
    if sections.get('cores'):
        stats['cpuCount'] = int(sections['cores'][0])
    if sections.get('host'):
        stats['hostname'] = sections['host'][0]

    disk = (sections.get('disk') or [''])[0].split()
    if len(disk) == 7:
        source, target, fstype, size, used, avail, pcent = disk
        stats['fsSize'] = [{
            'fs': source,
            'mount': target,
            'type': fstype,
            'size': int(size),
            'used': int(used),
            'available': int(avail),
            'use': float(pcent.rstrip('%')),
        }]
    return stats


class SSHManager:
    """Manages the panel SSH keypair and all SSH operations against nodes."""

    def __init__(self, key_path: str = 'keys/fleetpanel_rsa', timeout: int = 10):
        self.key_path = key_path
        self.timeout = timeout

    def ensure_keypair(self) -> str:
        """Generates a 4096-bit RSA keypair if one does not exist. Returns the public key string."""
        pub_path = self.key_path + '.pub'

        if not os.path.exists(self.key_path):
            os.makedirs(os.path.dirname(os.path.abspath(self.key_path)), exist_ok=True)
            private_key = rsa.generate_private_key(
                public_exponent=65537,
                key_size=4096,
                backend=default_backend(),
            )
            with open(self.key_path, 'wb') as f:
                f.write(private_key.private_bytes(
                    serialization.Encoding.PEM,
                    serialization.PrivateFormat.OpenSSH,
                    serialization.NoEncryption(),
                ))
            os.chmod(self.key_path, 0o600)
            with open(pub_path, 'wb') as f:
                f.write(private_key.public_key().public_bytes(
                    serialization.Encoding.OpenSSH,
                    serialization.PublicFormat.OpenSSH,
                ))

        with open(pub_path, 'r') as f:
            return f.read().strip()

    def get_client(self, endpoint: NodeEndpoint) -> paramiko.SSHClient:
        """Returns a connected, authenticated Paramiko SSH client.

        Raises HostKeyUnverifiedError when the host key does not match the
        node's trusted fingerprint, TransportError
        for every other connection failure.
        """
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(_FingerprintPolicy(endpoint))

        auth = {}
        if endpoint.ssh_key:
            auth['pkey'] = _load_private_key(endpoint.ssh_key)
        elif endpoint.ssh_password:
            auth['password'] = endpoint.ssh_password
        elif os.path.exists(self.key_path):
            auth['key_filename'] = self.key_path

        try:
            client.connect(
                endpoint.address,
                port=endpoint.ssh_port,
                username=endpoint.ssh_user or 'root',
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
                **auth,
            )
        except HostKeyUnverifiedError:
            client.close()
            raise
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TransportError(f'SSH connection to {endpoint.address} failed: {e}') from e
        return client

    def fetch_host_fingerprint(self, endpoint: NodeEndpoint) -> str:
        """Key exchange only (no auth): returns the fingerprint the host presents."""
        try:
            sock = socket.create_connection((endpoint.address, endpoint.ssh_port), timeout=self.timeout)
        except OSError as e:
            raise TransportError(f'SSH connection to {endpoint.address} failed: {e}') from e
        transport = paramiko.Transport(sock)
        try:
            transport.start_client(timeout=self.timeout)
            return host_key_fingerprint(transport.get_remote_server_key())
        except paramiko.SSHException as e:
            raise TransportError(f'SSH handshake with {endpoint.address} failed: {e}') from e
        finally:
            transport.close()

    def exec(self, endpoint: NodeEndpoint, command: str, timeout: int | None = None) -> tuple[str, str]:
        """Runs a command on a node. Returns (stdout, stderr) as strings."""
        client = self.get_client(endpoint)
        try:
            _, stdout, stderr = client.exec_command(command, timeout=timeout or self.timeout)
            return stdout.read().decode(), stderr.read().decode()
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f'SSH command on {endpoint.address} failed: {e}') from e
        finally:
            client.close()

    def get_system_stats(self, endpoint: NodeEndpoint) -> dict:
        """Liveness + stats probe. Returns an agent-style `/system/stats` payload."""
        stdout, _ = self.exec(endpoint, _STATS_COMMAND)
        try:
            return parse_stats_output(stdout)
        except (ValueError, IndexError) as e:
            raise TransportError(f'Unreadable stats from {endpoint.address}: {e}') from e

    def list_servers(self, endpoint: NodeEndpoint) -> list[dict]:
        """Lists docker containers on the node. No docker means no servers."""
        stdout, _ = self.exec(endpoint, _DOCKER_PS_COMMAND)
        if 'no-docker' in stdout:
            return []
        servers = []
        for line in stdout.strip().splitlines():
            parts = line.split('|')
            if len(parts) != 4:
                continue
            container_id, name, status, image = parts
            servers.append({
                'id': container_id,
                'name': name,
                'status': 'running' if 'up' in status.lower() else 'stopped',
                'type': 'docker',
                'path': f'docker://{image}',
                'execution_mode': 'docker',
            })
        return servers
