"""Registry HTTP Server.

This module provides the Flask-based HTTP surface of the reference
registry. Routes translate JSON requests into ``Registry`` calls and map
business outcomes onto HTTP status codes.
"""

import logging
import sqlite3
from typing import Callable, Optional

from flask import Flask, jsonify, request
from github import Github, GithubException

from .config import Config
from .push_validation import missing_fields
from .registry import PushError, Registry
from .registry_store import RegistryStore


logger = logging.getLogger(__name__)


PUSH_ERROR_STATUS = {
    PushError.AUTH_REQUIRED: 401,
    PushError.INVALID_INPUT: 400,
    PushError.INVALID_REFERENCE: 400,
    PushError.RATE_LIMIT: 429,
    PushError.CONFLICT: 409,
}

Authenticator = Callable[[str], Optional[str]]


class GitHubTokenAuthenticator:
    """Resolves a GitHub token to the login of its owner."""

    def __call__(self, token: str) -> Optional[str]:
        try:
            return Github(token).get_user().login
        except GithubException as e:
            logger.info(f"Rejected token: {e.status}")
            return None


def _bearer_token() -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip() or None
    return None


# ========== Registry Server ==========

def create_sync_server(
    config: Config,
    registry: Optional[Registry] = None,
    authenticator: Optional[Authenticator] = None,
) -> Flask:
    """Create Flask app for the reference registry.

    Args:
        config: Configuration object
        registry: Registry service (built from config if omitted)
        authenticator: Maps a bearer token to a user id, or None

    Returns:
        Flask application
    """
    app = Flask(__name__)
    registry = registry or Registry(config, RegistryStore(config))
    authenticator = authenticator or GitHubTokenAuthenticator()

    def json_body() -> dict:
        body = request.get_json(silent=True)
        return body if isinstance(body, dict) else {}

    def lookup_args():
        body = json_body()
        full_name = body.get("fullName")
        if not isinstance(full_name, str) or not full_name:
            return None, None
        return full_name, body.get("referenceName") or None

    @app.route("/api/references/pull", methods=["POST"])
    def pull_reference():
        """Return a reference; does not count as a pull."""
        full_name, reference_name = lookup_args()
        if not full_name:
            return jsonify({"error": "invalid_input", "message": "fullName is required"}), 400

        reference = registry.pull(full_name, reference_name)
        if reference is None:
            return jsonify({"error": "not_found"}), 404
        return jsonify(reference.to_dict())

    @app.route("/api/references/check", methods=["POST"])
    def check_reference():
        """Cheap existence check; answers 200 whether or not a reference is stored."""
        full_name, reference_name = lookup_args()
        if not full_name:
            return jsonify({"error": "invalid_input", "message": "fullName is required"}), 400

        result = registry.check(full_name, reference_name)
        return jsonify(result)

    @app.route("/api/references/push", methods=["POST"])
    def push_reference():
        token = _bearer_token()
        identity = authenticator(token) if token else None
        payload = json_body()

        if identity:
            missing = missing_fields(payload)
            if missing:
                return jsonify({
                    "success": False,
                    "error": PushError.INVALID_INPUT.value,
                    "message": f"Missing required fields: {', '.join(missing)}",
                }), 400

        result = registry.push(payload, identity)
        if result.success:
            return jsonify(result.to_dict())
        return jsonify(result.to_dict()), PUSH_ERROR_STATUS[result.error]

    @app.route("/api/references/record-pull", methods=["POST"])
    def record_pull():
        full_name, reference_name = lookup_args()
        if not full_name:
            return jsonify({"error": "invalid_input", "message": "fullName is required"}), 400

        recorded = registry.record_pull(full_name, reference_name)
        return jsonify({"recorded": recorded})

    @app.route("/api/references", methods=["GET"])
    def list_references():
        limit = request.args.get("limit", default=50, type=int)
        limit = max(1, min(limit, 500))
        return jsonify([
            {
                "fullName": ref.full_name,
                "referenceName": ref.reference_name,
                "pullCount": ref.pull_count,
                "analyzedAt": ref.analyzed_at,
                "commitSha": ref.commit_sha,
                "isVerified": ref.is_verified,
            }
            for ref in registry.list(limit)
        ])

    @app.route("/api/references/<owner>/<repo>", methods=["GET"])
    def list_repository_references(owner: str, repo: str):
        return jsonify(registry.list_by_repo(f"{owner}/{repo}"))

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint."""
        return jsonify({"status": "healthy", "service": "refsync-registry"})

    @app.errorhandler(404)
    def not_found(error):
        """Handle 404 errors."""
        return jsonify({"error": "not_found"}), 404

    @app.errorhandler(sqlite3.Error)
    def storage_error(error):
        logger.error(f"Registry storage error: {error}")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500

    @app.errorhandler(500)
    def internal_error(error):
        """Handle 500 errors."""
        logger.error(f"Internal error: {error}")
        return jsonify({"error": "internal", "message": "Internal server error"}), 500

    logger.info("Registry server routes configured")

    return app


# ========== Server Runner ==========

class SyncServer:
    """Registry server manager."""

    def __init__(self, config: Config, authenticator: Optional[Authenticator] = None):
        """Initialize the registry server.

        Args:
            config: Configuration object
            authenticator: Optional token authenticator override
        """
        self.config = config
        self.authenticator = authenticator
        self.app = None
        self.host = config.server_host
        self.port = config.server_port

    def create_app(self) -> Flask:
        """Create Flask application.

        Returns:
            Flask app
        """
        if self.app is None:
            self.app = create_sync_server(self.config, authenticator=self.authenticator)
        return self.app

    def run(self, debug: bool = False) -> None:
        """Run the registry server.

        Args:
            debug: Enable debug mode
        """
        app = self.create_app()

        logger.info(f"Starting registry server on {self.host}:{self.port}")

        try:
            app.run(
                host=self.host,
                port=self.port,
                debug=debug,
                use_reloader=False,
            )
        except KeyboardInterrupt:
            logger.info("Registry server stopped by user")
        except Exception as e:
            logger.error(f"Registry server error: {e}")
            raise


def start_sync_server(config: Config, debug: bool = False) -> None:
    """Start the registry server (standalone function).

    Args:
        config: Configuration object
        debug: Enable debug mode
    """
    server = SyncServer(config)
    server.run(debug=debug)
