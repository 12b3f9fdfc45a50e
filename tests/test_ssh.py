"""Tests for SSH host-key verification and private key loading."""
import paramiko
import pytest

from fleetpanel.errors import HostKeyUnverifiedError, TransportError
from fleetpanel.models.node import NodeEndpoint
from fleetpanel.services.ssh import _FingerprintPolicy, _load_private_key, host_key_fingerprint

HOST = '10.0.3.1'


@pytest.fixture(scope='module')
def host_key():
    return paramiko.RSAKey.generate(1024)


def _endpoint(trusted=None):
    return NodeEndpoint(id=1, name='ssh-box', address=HOST, port=3001, transport='ssh',
                        ssh_user='root', host_key=trusted)


def test_trusted_key_is_accepted(host_key):
    client = paramiko.SSHClient()

    _FingerprintPolicy(_endpoint(host_key_fingerprint(host_key))).missing_host_key(client, HOST, host_key)

    known = client.get_host_keys().lookup(HOST)
    assert known is not None
    assert 'ssh-rsa' in known


def test_mismatched_key_is_rejected_with_its_fingerprint(host_key):
    client = paramiko.SSHClient()
    policy = _FingerprintPolicy(_endpoint('SHA256:somethingelse'))

    with pytest.raises(HostKeyUnverifiedError) as excinfo:
        policy.missing_host_key(client, HOST, host_key)

    assert excinfo.value.fingerprint == host_key_fingerprint(host_key)
    assert excinfo.value.key_type == 'ssh-rsa'
    assert excinfo.value.to_dict()['code'] == 'SSH_HOST_KEY_UNVERIFIED'
    assert client.get_host_keys().lookup(HOST) is None


def test_untrusted_host_is_rejected(host_key):
    with pytest.raises(HostKeyUnverifiedError) as excinfo:
        _FingerprintPolicy(_endpoint()).missing_host_key(paramiko.SSHClient(), HOST, host_key)

    assert excinfo.value.fingerprint == host_key_fingerprint(host_key)
    assert excinfo.value.address == HOST


def test_garbage_private_key_is_a_transport_error():
    with pytest.raises(TransportError):
        _load_private_key('not a key at all')
