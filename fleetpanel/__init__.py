import logging
import os
from flask import Flask
from sqlalchemy.exc import OperationalError
from fleetpanel.extensions import db
from fleetpanel.config import Config


def create_app(config_class=Config):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )

    # Ensure instance folder exists
    os.makedirs(app.instance_path, exist_ok=True)

    # Init extensions
    db.init_app(app)

    # Register blueprints
    from fleetpanel.blueprints.api import bp as api_bp

    app.register_blueprint(api_bp, url_prefix='/api')

    with app.app_context():
        # Models must be imported before create_all sees their tables
        from fleetpanel.models import failover_event, node, resource_sample, server  # noqa: F401
        db.create_all()
        _apply_migrations(db)

    from fleetpanel.services.control_plane import ControlPlane
    app.extensions['fleetpanel'] = ControlPlane.from_config(app.config)

    return app


def _apply_migrations(db):
    """Applies lightweight schema migrations for columns added after initial release.

    Uses SQLite's ALTER TABLE ADD COLUMN, run on every startup. A statement
    whose column already exists fails and is skipped.
    """
    migrations = [
        # v2: soft-failure tracking and observed transport
        "ALTER TABLE nodes ADD COLUMN consecutive_failures INTEGER NOT NULL DEFAULT 0",
        "ALTER TABLE nodes ADD COLUMN last_transport VARCHAR(16)",
    ]

    with db.engine.connect() as conn:
        for stmt in migrations:
            try:
                conn.execute(db.text(stmt))
                conn.commit()
            except OperationalError:
                # Column already exists
                conn.rollback()
