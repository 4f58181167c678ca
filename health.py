#!/usr/bin/env python3
"""
Health and acknowledgement endpoints for wum.

/health reports liveness; /accept and /reject are the links operators
follow from upgrade notifications.
"""

import logging
import os

from flask import Flask, jsonify, request

from wum import __version__, setup_logging

logger = logging.getLogger(__name__)

DEFAULT_HOSTNAME = "127.0.0.1"
DEFAULT_PORT = 3030


def create_app() -> Flask:
    app = Flask(__name__)

    @app.after_request
    def log_request(response):
        logger.debug(f"{request.method} {request.path} -> {response.status_code}")
        return response

    @app.route('/health')
    def health():
        """Liveness check."""
        return jsonify({'status': 'ok', 'version': __version__})

    @app.route('/accept')
    def accept():
        logger.info("Accept endpoint hit")
        return 'Accepted', 200

    @app.route('/reject')
    def reject():
        logger.info("Reject endpoint hit")
        return 'Rejected', 200

    return app


def main():
    setup_logging(os.environ.get('LOG_LEVEL', 'INFO'))
    host = os.environ.get('WEB_HOSTNAME', DEFAULT_HOSTNAME)
    port_value = os.environ.get('WEB_PORT', str(DEFAULT_PORT))
    try:
        port = int(port_value)
    except ValueError:
        raise SystemExit(f"WEB_PORT must be a number, got '{port_value}'")

    logger.info(f"Serving health endpoints on {host}:{port}")
    create_app().run(host=host, port=port)


if __name__ == '__main__':
    main()
