import os
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes')


class Config:
    SECRET_KEY = os.getenv('Secret_Key', os.urandom(24).hex())
    FLASK_PORT = int(os.getenv('Flask_Port', 5000))
    LOG_LEVEL = os.getenv('Log_Level', 'INFO')

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv('Database_Url', 'sqlite:///fleetpanel.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Remote agent API
    AGENT_PORT = int(os.getenv('Agent_Port', 3001))
    AGENT_API_PREFIX = os.getenv('Agent_Api_Prefix', '/api')

    # SSH keypair used for nodes that have no key or password of their own
    SSH_KEY_PATH = os.getenv('SSH_Key_Path', 'keys/fleetpanel_rsa')

    # ── Control loops ──────────────────────────────────────────────────────
    # Set Control_Loops_Enabled=false to serve the API without background work.
    CONTROL_LOOPS_ENABLED = _env_flag('Control_Loops_Enabled', 'true')

    # Low-footprint mode slows resource collection and keeps less history.
    LOW_FOOTPRINT = _env_flag('Low_Footprint')

    HEALTH_CHECK_INTERVAL = int(os.getenv('Health_Check_Interval', 30))
    RESOURCE_COLLECTION_INTERVAL = int(os.getenv(
        'Resource_Collection_Interval', 60 if LOW_FOOTPRINT else 30
    ))
    RESOURCE_RETENTION_DAYS = int(os.getenv(
        'Resource_Retention_Days', 2 if LOW_FOOTPRINT else 7
    ))
    RESOURCE_MAX_DATA_POINTS = 200 if LOW_FOOTPRINT else 1000
    FAILOVER_INTERVAL = int(os.getenv('Failover_Interval', 60))
    DISCOVERY_INTERVAL_MINUTES = int(os.getenv('Discovery_Interval_Minutes', 5))

    # Consecutive failed probes a node may accumulate in 'failing' before it
    # is marked 'offline'. 0 sends a failed probe straight to 'offline'.
    NODE_SOFT_FAILURE_LIMIT = int(os.getenv('Node_Soft_Failure_Limit', 0))
