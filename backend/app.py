import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_cors import CORS

from workbench.decomposition_service import WorkspaceRegistry
from workbench.normalization_routes import normalization_bp
from workbench.solver_client import DEFAULT_BASE_URL, SolverClient

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_float(name):
    value = os.getenv(name)
    return float(value) if value else None


def load_config():
    return {
        "SECRET_KEY": os.getenv('SECRET_KEY', 'dev-secret-change-me'),
        "LOG_LEVEL": os.getenv('LOG_LEVEL', 'INFO'),
        "SOLVER_BASE_URL": os.getenv('SOLVER_BASE_URL', DEFAULT_BASE_URL),
        "SOLVER_TIME_LIMIT": int(os.getenv('SOLVER_TIME_LIMIT', '30')),
        "SOLVER_MONTE_CARLO": _env_bool('SOLVER_MONTE_CARLO'),
        "SOLVER_SAMPLES": int(os.getenv('SOLVER_SAMPLES', '0')),
        "SOLVER_REQUEST_TIMEOUT": _env_float('SOLVER_REQUEST_TIMEOUT'),
        "SOLVER_SESSION": None,
        "WORKSPACE_LIMIT": int(os.getenv('WORKSPACE_LIMIT', '256')),
    }


def configure_logging(level):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )


def create_app(overrides=None):
    app = Flask(__name__)
    app.config.update(load_config())
    if overrides:
        app.config.update(overrides)
    configure_logging(app.config['LOG_LEVEL'])
    CORS(app, supports_credentials=True) # session cookie carries the workspace id

    app.extensions['solver_client'] = SolverClient(
        app.config['SOLVER_BASE_URL'],
        session=app.config['SOLVER_SESSION'],
        time_limit=app.config['SOLVER_TIME_LIMIT'],
        monte_carlo=app.config['SOLVER_MONTE_CARLO'],
        samples=app.config['SOLVER_SAMPLES'],
        request_timeout=app.config['SOLVER_REQUEST_TIMEOUT'],
    )
    app.extensions['workspaces'] = WorkspaceRegistry(app.config['WORKSPACE_LIMIT'])
    app.register_blueprint(normalization_bp)

    @app.route('/api/ping', methods=['GET'])
    def ping():
        return jsonify({"message": "pong", "solver": app.config['SOLVER_BASE_URL']}), 200

    logger.info("Solver endpoint: %s", app.config['SOLVER_BASE_URL'])
    return app


app = create_app()

if __name__ == '__main__':
    app.run(host='0.0.0.0', debug=True, port=5000)
