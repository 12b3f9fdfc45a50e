"""
Wiring of the control-plane services and their background loops.

Each loop is a daemon thread running one service call per tick inside its
own app context. A failing tick is logged and the loop carries on.
"""
import logging
import threading

from fleetpanel.extensions import db
from fleetpanel.services.agent import AgentClient
from fleetpanel.services.channel import RemoteExecutionChannel
from fleetpanel.services.discovery import Discovery
from fleetpanel.services.failover import FailoverController
from fleetpanel.services.health_monitor import HealthMonitor
from fleetpanel.services.load_balancer import LoadBalancer
from fleetpanel.services.remote_management import RemoteNodeManager
from fleetpanel.services.resource_monitor import ResourceMonitor
from fleetpanel.services.ssh import SSHManager

log = logging.getLogger(__name__)


class PeriodicTask:
    """Calls `func` every `interval` seconds until stopped (first call at start)."""

    def __init__(self, name: str, interval: float, func, app):
        self.name = name
        self.interval = interval
        self.func = func
        self.app = app
        self._stop = threading.Event()
        self._thread = None

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        log.info('Started %s loop (every %ss)', self.name, self.interval)

    def stop(self, timeout: float | None = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        log.info('Stopped %s loop', self.name)

    def tick(self):
        try:
            self.func()
        except Exception:
            db.session.rollback()
            log.exception('%s cycle failed', self.name)
        finally:
            # Next tick starts from a fresh session and sees other loops' writes.
            db.session.remove()

    def _run(self):
        with self.app.app_context():
            while not self._stop.is_set():
                self.tick()
                self._stop.wait(self.interval)


class ControlPlane:
    """Holds one instance of every service, shared by the loops and the routes."""

    def __init__(self, health, resources, load_balancer, failover, discovery, remote, intervals=None):
        self.health = health
        self.resources = resources
        self.load_balancer = load_balancer
        self.failover = failover
        self.discovery = discovery
        self.remote = remote
        self.intervals = intervals or {}
        self.tasks: list[PeriodicTask] = []

    @classmethod
    def from_config(cls, config) -> 'ControlPlane':
        get = config.get if isinstance(config, dict) else lambda key, default=None: getattr(config, key, default)

        ssh = SSHManager(key_path=get('SSH_KEY_PATH', 'keys/fleetpanel_rsa'))
        channel = RemoteExecutionChannel(AgentClient(api_prefix=get('AGENT_API_PREFIX', '/api')), ssh)

        return cls(
            health=HealthMonitor(channel, soft_failure_limit=get('NODE_SOFT_FAILURE_LIMIT', 0)),
            resources=ResourceMonitor(
                channel,
                retention_days=get('RESOURCE_RETENTION_DAYS', 7),
                max_data_points=get('RESOURCE_MAX_DATA_POINTS', 1000),
            ),
            load_balancer=LoadBalancer(),
            failover=FailoverController(channel),
            discovery=Discovery(channel, port=get('AGENT_PORT', 3001)),
            remote=RemoteNodeManager(channel),
            intervals={
                'health': get('HEALTH_CHECK_INTERVAL', 30),
                'resources': get('RESOURCE_COLLECTION_INTERVAL', 30),
                'failover': get('FAILOVER_INTERVAL', 60),
                'discovery': get('DISCOVERY_INTERVAL_MINUTES', 5) * 60,
            },
        )

    @property
    def ssh(self) -> SSHManager:
        return self.remote.channel.ssh

    def collect_resources(self):
        self.resources.collect_all()
        self.resources.cleanup_old_data()

    def start(self, app):
        if self.tasks:
            return
        self.tasks = [
            PeriodicTask('health', self.intervals.get('health', 30), self.health.check_all, app),
            PeriodicTask('resources', self.intervals.get('resources', 30), self.collect_resources, app),
            PeriodicTask('failover', self.intervals.get('failover', 60), self.failover.monitor_and_failover, app),
            PeriodicTask('discovery', self.intervals.get('discovery', 300),
                         self.discovery.perform_discovery_cycle, app),
        ]
        for task in self.tasks:
            task.start()

    def stop(self):
        for task in self.tasks:
            task.stop(timeout=5)
        self.tasks = []
