#!/usr/bin/env python3
"""Flask query API for the screen recall history.

Serves the gallery/timeline consumers and the text generation side:
recent events, keyword search, per-day timelines, recall context and the
screenshot files themselves. When a scheduler is attached it also exposes
capture status and start/stop/interval controls, and with a
ConfigManager the configuration can be read and edited live.
"""

import logging
import re
from datetime import datetime, timedelta

from dateutil import parser as dateutil_parser
from flask import Flask, abort, jsonify, request, send_file

from recall.errors import PermissionDenied

logger = logging.getLogger(__name__)

DEFAULT_EVENT_LIMIT = 50
KEYWORD_SPLIT = re.compile(r"[,\s]+")

# Settings only read when the daemon starts
RESTART_KEYS = {
    'capture': ('max_frame_rate',),
    'storage': ('data_dir',),
    'context': ('ocr_char_budget',),
    'web': ('host', 'port'),
}


def create_app(store, assembler, scheduler=None, config_manager=None) -> Flask:
    """Build the Flask app around an EventStore and ContextAssembler.

    Args:
        store: EventStore to query
        assembler: ContextAssembler for /api/context
        scheduler: Optional CaptureScheduler for the capture control routes
        config_manager: Optional ConfigManager; interval changes are saved to it
    """
    app = Flask(__name__)

    def require_scheduler():
        if scheduler is None:
            abort(404, "Capture control is not available")
        return scheduler

    def require_config():
        if config_manager is None:
            abort(404, "Configuration is not available")
        return config_manager

    def persist_interval(applied):
        if config_manager is None:
            return
        try:
            config_manager.update('capture', 'interval_seconds', applied)
        except OSError as e:
            logger.warning(f"Interval applied but not saved: {e}")

    def status_payload():
        return {
            "state": scheduler.state.value,
            "capturing": scheduler.is_capturing,
            "interval_seconds": scheduler.interval_seconds,
        }

    @app.route('/api/events')
    def api_events():
        """Most recent events, newest first. ``limit=0`` returns all."""
        try:
            limit = int(request.args.get('limit', DEFAULT_EVENT_LIMIT))
        except ValueError:
            return jsonify({"error": "limit must be an integer"}), 400
        if limit < 0:
            return jsonify({"error": "limit must not be negative"}), 400

        events = store.fetch_recent(limit)
        return jsonify({
            "events": [e.to_dict() for e in events],
            "count": len(events),
        })

    @app.route('/api/search')
    def api_search():
        """Keyword search over OCR text; keywords are OR-ed together."""
        query = request.args.get('q', '')
        keywords = [k for k in KEYWORD_SPLIT.split(query) if k]
        events = store.fetch_by_keywords(keywords)
        return jsonify({
            "keywords": keywords,
            "events": [e.to_dict() for e in events],
            "count": len(events),
        })

    @app.route('/api/day/<date_string>')
    def api_day(date_string):
        """Timeline of one local day, oldest first."""
        try:
            day = dateutil_parser.parse(date_string).date()
        except (ValueError, OverflowError):
            return jsonify({"error": "Invalid date. Use YYYY-MM-DD."}), 400

        start = datetime.combine(day, datetime.min.time())
        events = store.fetch_between(start, start + timedelta(days=1))
        return jsonify({
            "date": day.isoformat(),
            "events": [e.to_dict() for e in events],
            "count": len(events),
        })

    @app.route('/api/context')
    def api_context():
        try:
            max_events = int(request.args.get('max_events', 5))
        except ValueError:
            return jsonify({"error": "max_events must be an integer"}), 400
        return jsonify({"preamble": assembler.build_preamble(max_events)})

    @app.route('/screenshot/<path:relative_path>')
    def serve_screenshot(relative_path):
        """Serve a screenshot file by its stored relative path."""
        file_path = store.resolve_screenshot_path(relative_path)
        if file_path is None:
            abort(404, "Screenshot not found")
        if not file_path.is_file():
            abort(404, "Screenshot file not found on disk")
        return send_file(file_path, mimetype='image/png')

    @app.route('/api/status')
    def api_status():
        require_scheduler()
        return jsonify(status_payload())

    @app.route('/api/capture/start', methods=['POST'])
    def api_capture_start():
        capture = require_scheduler()
        try:
            started = capture.start()
        except PermissionDenied as e:
            return jsonify({"error": str(e), **status_payload()}), 403
        return jsonify({"started": started, **status_payload()})

    @app.route('/api/capture/stop', methods=['POST'])
    def api_capture_stop():
        capture = require_scheduler()
        capture.stop()
        return jsonify(status_payload())

    @app.route('/api/capture/interval', methods=['PUT'])
    def api_capture_interval():
        """Set the sampling interval.

        Request body:
            {"seconds": 30}
        """
        capture = require_scheduler()
        data = request.get_json(silent=True) or {}
        try:
            seconds = float(data['seconds'])
        except (KeyError, TypeError, ValueError):
            return jsonify({"error": "Body must be JSON with numeric 'seconds'"}), 400

        persist_interval(capture.set_interval(seconds))
        return jsonify(status_payload())

    @app.route('/api/capture/faster', methods=['POST'])
    def api_capture_faster():
        """Halve the sampling interval (down to 1s)."""
        persist_interval(require_scheduler().increase_frequency())
        return jsonify(status_payload())

    @app.route('/api/capture/slower', methods=['POST'])
    def api_capture_slower():
        """Double the sampling interval (up to 300s)."""
        persist_interval(require_scheduler().decrease_frequency())
        return jsonify(status_payload())

    @app.route('/api/config', methods=['GET'])
    def get_config():
        """Return the current configuration, all sections."""
        return jsonify(require_config().to_dict())

    @app.route('/api/config', methods=['PATCH'])
    def update_config():
        """Update one configuration value.

        Privacy rules and the OCR mode apply from the next capture tick. The
        sampling interval is applied to the running scheduler immediately.

        Request body:
            {
                "section": "privacy",
                "key": "excluded_bundle_ids",
                "value": ["keepassxc", "slack"]
            }

        Returns:
            {
                "success": true/false,
                "requires_restart": true/false,
                "config": {...}
            }
        """
        manager = require_config()
        data = request.get_json(silent=True) or {}
        if not all(k in data for k in ['section', 'key', 'value']):
            return jsonify({"error": "Missing required fields: section, key, value"}), 400

        section, key, value = data['section'], data['key'], data['value']
        if section == 'capture' and key == 'interval_seconds' and scheduler is not None:
            try:
                value = scheduler.set_interval(float(value))
            except (TypeError, ValueError):
                return jsonify({"error": "interval_seconds must be a number"}), 400

        try:
            changed = manager.update(section, key, value)
        except OSError as e:
            return jsonify({"error": f"Failed to save config: {e}"}), 500

        return jsonify({
            "success": changed,
            "requires_restart": key in RESTART_KEYS.get(section, ()),
            "config": manager.to_dict(),
        })

    return app
