"""Loopback HTTP companion for the browser extension.

Routes:
    GET  /status          → {"status": "ok", "version": ...}
    GET  /intention       → {"active": false} | {"active": true, "text", "remaining", "llmFilteringEnabled"}
    POST /check-url       {"url"} → {"allowed", "reason", "message"}
    POST /override        {"url", "phrase", "learn"} → {"success": true} | 403 {"success": false, "error"}
    POST /end-intention   → {"success": true}
    OPTIONS *             → 204 (CORS preflight)

Every response carries permissive CORS headers and closes the connection.
"""

from __future__ import annotations

import logging
from importlib.metadata import PackageNotFoundError, version as package_version

from flask import Flask, jsonify, request

from intentguard.models import AccessType, EndReason
from intentguard.session.manager import SessionManager

logger = logging.getLogger(__name__)

try:
    VERSION = package_version("intentguard")
except PackageNotFoundError:
    VERSION = "0.0.0"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


class RequestError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def create_app(manager: SessionManager, version: str = VERSION) -> Flask:
    app = Flask(__name__)

    def json_body(*required: str) -> dict:
        body = request.get_json(force=True, silent=True)
        if not isinstance(body, dict):
            raise RequestError("Invalid JSON body")
        missing = [key for key in required if not isinstance(body.get(key), str)]
        if missing:
            raise RequestError(f"Missing {' or '.join(missing)}")
        return body

    @app.before_request
    def preflight():
        if request.method == "OPTIONS":
            return "", 204

    @app.after_request
    def add_headers(response):
        response.headers.update(CORS_HEADERS)
        response.headers["Connection"] = "close"
        return response

    @app.errorhandler(RequestError)
    def bad_request(e: RequestError):
        return jsonify({"error": e.message}), 400

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.get("/status")
    def status():
        return jsonify({"status": "ok", "version": version})

    @app.get("/intention")
    def intention():
        snapshot = manager.snapshot()
        if snapshot is None:
            return jsonify({"active": False})
        current = snapshot.intention
        return jsonify({
            "active": True,
            "text": current.text,
            "remaining": current.remaining_formatted(manager.now()),
            "llmFilteringEnabled": current.llm_filtering_enabled,
        })

    @app.post("/check-url")
    def check_url():
        body = json_body("url")
        result = manager.check(AccessType.URL, body["url"], body.get("title") or "")
        return jsonify(result.to_dict())

    @app.post("/override")
    def override():
        body = json_body("url", "phrase")
        learn = body.get("learn") is True
        if not manager.override(AccessType.URL, body["url"], body["phrase"], learn=learn):
            return jsonify({"success": False, "error": "Incorrect phrase"}), 403
        return jsonify({"success": True})

    @app.post("/end-intention")
    def end_intention():
        manager.end_intention(EndReason.NEW_INTENTION)
        return jsonify({"success": True})

    return app


def serve(manager: SessionManager, host: str, port: int) -> None:
    """Run the companion server until interrupted."""
    app = create_app(manager)
    logger.info(f"Companion server listening on http://{host}:{port}")
    app.run(host=host, port=port, threaded=True, use_reloader=False)
