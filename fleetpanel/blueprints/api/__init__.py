from flask import Blueprint

bp = Blueprint('api', __name__)

from fleetpanel.blueprints.api import routes  # noqa: E402,F401
