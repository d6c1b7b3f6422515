#!/usr/bin/env python3
"""
M365 Inventory Hub REST API Server

Serves the sync trigger, sync status and dashboard read endpoints.
"""

from datetime import datetime, timezone

from flask import Flask, jsonify
from flask_cors import CORS

from api.m365_api import m365_api
from common.config import config
from common.db import check_db_connection
from common.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_app() -> Flask:
    """Build the Flask application with CORS and the M365 blueprint."""
    app = Flask(__name__)

    # Register M365 API blueprint
    app.register_blueprint(m365_api)

    # Enable CORS for cross-origin requests from the dashboard
    CORS(app,
         origins=config.app.cors_origins,
         methods=['GET', 'POST', 'OPTIONS'],
         allow_headers=['Content-Type', 'Authorization', 'X-Requested-With', 'Cache-Control', 'Pragma'],
         supports_credentials=True,
         max_age=86400)

    @app.route('/api/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        return jsonify({
            "status": "healthy",
            "database": "connected" if check_db_connection() else "unavailable",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": "1.0.0"
        })

    return app


app = create_app()


if __name__ == '__main__':
    setup_logging()
    logger.info(f"Starting M365 Inventory Hub API on {config.app.api_host}:{config.app.api_port}")
    app.run(host=config.app.api_host, port=config.app.api_port, debug=config.app.debug)
