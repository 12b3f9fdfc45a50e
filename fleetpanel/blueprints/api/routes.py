from flask import current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from fleetpanel.blueprints.api import bp
from fleetpanel.errors import (
    FleetError, HostKeyUnverifiedError, InvalidRequestError, NoAvailableNodesError,
    NodeInUseError, NodeNotFoundError, NodeNotOnlineError, NodeUnreachableError,
    TransportError, UnknownStrategyError, UnsupportedTransportError,
)
from fleetpanel.extensions import db
from fleetpanel.services.load_balancer import RESOURCE_BASED, serialize_analysis

# Most specific first: HostKeyUnverifiedError is also a TransportError.
_ERROR_STATUS = (
    (HostKeyUnverifiedError, 409),
    (NodeNotFoundError, 404),
    (NodeNotOnlineError, 409),
    (NodeInUseError, 409),
    (NoAvailableNodesError, 409),
    (UnknownStrategyError, 400),
    (InvalidRequestError, 400),
    (UnsupportedTransportError, 400),
    (NodeUnreachableError, 502),
    (TransportError, 502),
)

_NODE_FIELDS = ('auth_token', 'ssh_user', 'ssh_password', 'ssh_key', 'ssh_port', 'host_key')


def _plane():
    return current_app.extensions['fleetpanel']


def _body() -> dict:
    return request.get_json(silent=True) or {}


@bp.errorhandler(FleetError)
def fleet_error(e):
    if isinstance(e, HostKeyUnverifiedError):
        return jsonify(e.to_dict()), 409
    for error_cls, status in _ERROR_STATUS:
        if isinstance(e, error_cls):
            return jsonify({'error': str(e)}), status
    return jsonify({'error': str(e)}), 500


@bp.errorhandler(SQLAlchemyError)
def database_error(e):
    db.session.rollback()
    return jsonify({'error': str(e)}), 500


# ── Nodes ─────────────────────────────────────────────────────────────────

@bp.route('/nodes')
def list_nodes():
    return jsonify([n.to_dict() for n in _plane().remote.nodes.all()])


@bp.route('/nodes', methods=['POST'])
def create_node():
    data = _body()
    credentials = {k: data[k] for k in _NODE_FIELDS if data.get(k) is not None}
    node = _plane().remote.register_node(
        data.get('name'),
        data.get('address'),
        int(data.get('port', current_app.config['AGENT_PORT'])),
        transport=data.get('transport', 'http'),
        **credentials,
    )
    return jsonify(node.to_dict()), 201


@bp.route('/nodes/<int:node_id>', methods=['DELETE'])
def delete_node(node_id):
    _plane().remote.delete_node(node_id)
    return jsonify({'success': True})


@bp.route('/nodes/enroll', methods=['POST'])
def enroll_node():
    data = _body()
    node, created = _plane().remote.enroll_node(
        data.get('address') or request.remote_addr,
        int(data.get('port', current_app.config['AGENT_PORT'])),
        data.get('metadata'),
    )
    return jsonify({'node': node.to_dict(), 'created': created}), 201 if created else 200


@bp.route('/nodes/<int:node_id>/trust', methods=['POST'])
def trust_node(node_id):
    return jsonify(_plane().remote.trust_host_key(node_id, _body().get('fingerprint')))


# ── Health ────────────────────────────────────────────────────────────────

@bp.route('/health')
def health_summary():
    return jsonify(_plane().health.get_health_summary())


@bp.route('/health/check', methods=['POST'])
def health_check_all():
    return jsonify(_plane().health.check_all())


@bp.route('/health/<int:node_id>', methods=['POST'])
def health_check_node(node_id):
    return jsonify(_plane().health.force_health_check(node_id))


# ── Load balancing ────────────────────────────────────────────────────────

@bp.route('/load')
def load_analysis():
    return jsonify(serialize_analysis(_plane().load_balancer.analyze()))


@bp.route('/load/recommendations')
def load_recommendations():
    result = _plane().load_balancer.get_recommendations()
    result['analysis'] = serialize_analysis(result['analysis'])
    return jsonify(result)


@bp.route('/load/balance', methods=['POST'])
def load_balance():
    data = _body()
    balancer = _plane().load_balancer
    servers = None
    if data.get('server_ids') is not None:
        servers = [s for s in (balancer.servers.get(i) for i in data['server_ids']) if s is not None]
    return jsonify(balancer.execute(data.get('strategy', RESOURCE_BASED), servers))


@bp.route('/load/auto', methods=['POST'])
def load_auto():
    return jsonify(_plane().load_balancer.auto_balance())


# ── Failover ──────────────────────────────────────────────────────────────

@bp.route('/failover/run', methods=['POST'])
def failover_run():
    return jsonify(_plane().failover.monitor_and_failover())


@bp.route('/failover')
def failover_status():
    return jsonify(_plane().failover.get_failover_status())


@bp.route('/failover/<int:node_id>/recover', methods=['POST'])
def failover_recover(node_id):
    return jsonify(_plane().failover.recover_node(node_id))


# ── Discovery ─────────────────────────────────────────────────────────────

@bp.route('/discovery/run', methods=['POST'])
def discovery_run():
    return jsonify(_plane().discovery.perform_discovery_cycle())


# ── Resources ─────────────────────────────────────────────────────────────

@bp.route('/resources/collect', methods=['POST'])
def resources_collect():
    return jsonify(_plane().resources.collect_all())


@bp.route('/resources/<int:node_id>/history')
def resources_history(node_id):
    hours = request.args.get('hours', 24, type=float)
    return jsonify(_plane().resources.get_history(node_id, hours))


@bp.route('/resources')
def resources_status():
    return jsonify(_plane().resources.get_current_status())


@bp.route('/resources/report')
def resources_report():
    return jsonify(_plane().resources.get_report(request.args.get('range', '24h')))


# ── Remote management ─────────────────────────────────────────────────────

@bp.route('/remote/bulk', methods=['POST'])
def remote_bulk():
    data = _body()
    return jsonify(_plane().remote.execute_bulk_operation(
        data.get('node_ids') or [], data.get('operation'), data.get('params') or {},
    ))


@bp.route('/remote/sync', methods=['POST'])
def remote_sync():
    data = _body()
    if data.get('master_node_id') is None:
        raise InvalidRequestError('master_node_id is required')
    return jsonify(_plane().remote.sync_server_configurations(
        data['master_node_id'], data.get('target_node_ids') or [],
    ))


@bp.route('/remote/metrics', methods=['POST'])
def remote_metrics():
    return jsonify(_plane().remote.collect_node_metrics(_body().get('node_ids') or []))


@bp.route('/ssh/public-key')
def ssh_public_key():
    try:
        return jsonify({'public_key': _plane().ssh.ensure_keypair()})
    except OSError as e:
        return jsonify({'error': str(e)}), 500
