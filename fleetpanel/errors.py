"""Exceptions raised by the fleet control plane.

Transport failures inside the periodic monitors are converted into node status
changes and never escape them. The exceptions below are what callers of the
produced operations (routes, bulk helpers) see.
"""


class FleetError(Exception):
    """Base class for control-plane errors."""


class NodeNotFoundError(FleetError):
    def __init__(self, node_id):
        super().__init__(f'Node {node_id} not found')
        self.node_id = node_id


class NodeNotOnlineError(FleetError):
    def __init__(self, node_id, status):
        super().__init__(f'Node {node_id} is not online (status: {status})')
        self.node_id = node_id
        self.status = status


class NodeInUseError(FleetError):
    def __init__(self, node_id, server_count):
        super().__init__(f'Node {node_id} still owns {server_count} server(s)')
        self.node_id = node_id
        self.server_count = server_count


class NodeUnreachableError(FleetError):
    """A probe that the caller explicitly asked for did not get an answer."""


class NoAvailableNodesError(FleetError):
    pass


class UnknownStrategyError(FleetError):
    pass


class UnsupportedTransportError(FleetError):
    """The operation has no implementation over the node's transport."""


class TransportError(FleetError):
    """Timeout, refused connection, DNS failure or a bad agent response."""


class HostKeyUnverifiedError(TransportError):
    """The SSH host presented a key the user has not trusted.

    Not retried: the fingerprint is surfaced so the user can decide whether
    to trust it.
    """

    code = 'SSH_HOST_KEY_UNVERIFIED'

    def __init__(self, address: str, fingerprint: str, key_type: str | None = None):
        super().__init__(f"The authenticity of host '{address}' can't be established.")
        self.address = address
        self.fingerprint = fingerprint
        self.key_type = key_type

    def to_dict(self) -> dict:
        return {
            'code': self.code,
            'error': str(self),
            'fingerprint': self.fingerprint,
            'algo': self.key_type,
        }


class InvalidRequestError(FleetError):
    """Caller input that no operation accepts (unknown bulk operation, bad transport)."""
