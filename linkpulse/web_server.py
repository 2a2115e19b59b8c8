import asyncio
import logging
import secrets
import threading

from flask import Flask, jsonify, request

from linkpulse.errors import FlushSkipped
from linkpulse.ingress import client_ip, session_fingerprint
from linkpulse.records import is_identifier
from utils.queue_monitor import check_pipeline

log = logging.getLogger(__name__)

NO_STORE = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


class LoopBridge:
    """Runs a coroutine on the pipeline's event loop from a Flask worker thread"""

    def __init__(self, loop, timeout=30):
        self.loop = loop
        self.timeout = timeout

    def __call__(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(self.timeout)


def _no_store(resp, status=200):
    resp.headers.update(NO_STORE)
    return resp, status


def create_app(pipeline, runner):
    """Build the analytics HTTP surface.

    runner: callable that executes a coroutine and returns its result
    (a LoopBridge in production).
    """
    app = Flask(__name__)
    settings = pipeline.settings

    def _admin():
        """Name of the authenticated admin, or None"""
        expected = settings.admin_api_key
        if not expected:
            return None
        supplied = request.headers.get("X-Admin-Key", "")
        auth = request.headers.get("Authorization", "")
        if not supplied and auth.lower().startswith("bearer "):
            supplied = auth[7:].strip()
        if supplied and secrets.compare_digest(supplied.encode(), expected.encode()):
            return request.headers.get("X-Admin-User") or "admin"
        return None

    def _unauthorized():
        return _no_store(jsonify({"error": "Unauthorized"}), 401)

    def _request_meta():
        ip = client_ip(request.headers, request.remote_addr)
        sid = session_fingerprint(ip, request.headers.get("User-Agent", ""), request.cookies)
        return ip, sid

    def _checked_linktree(linktree_id):
        """Error response for a bad/unknown linktree id, or None if it is fine"""
        if not is_identifier(linktree_id):
            return _no_store(jsonify({"error": "Invalid linktree ID format"}), 400)
        if not runner(pipeline.storage.linktree_exists(linktree_id)):
            return _no_store(jsonify({"error": "Linktree not found"}), 404)
        return None

    @app.route('/')
    def home():
        return "Analytics Online", 200

    # --- PUBLIC INGRESS (always 200) ---

    @app.route('/analytics/batch', methods=['POST'])
    def analytics_batch():
        processed = {"views": 0, "clicks": 0}
        try:
            payload = request.get_json(silent=True) or {}
            ip, sid = _request_meta()
            processed = runner(pipeline.ingress.process_batch(payload, ip, sid))
        except Exception as e:
            # Analytics failures must never break the page
            log.error(f"❌ Batch analytics error: {e}")
        return jsonify({"success": True, "processed": processed}), 200

    @app.route('/public/linktrees/<uid>/view', methods=['POST'])
    def linktree_view(uid):
        try:
            ip, sid = _request_meta()
            runner(pipeline.ingress.process_view(uid, ip, sid))
        except Exception as e:
            log.error(f"❌ View analytics error: {e}")
        return jsonify({"success": True}), 200

    @app.route('/public/links/<link_id>/click', methods=['POST'])
    def link_click(link_id):
        try:
            body = request.get_json(silent=True) or {}
            ip, sid = _request_meta()
            runner(pipeline.ingress.process_click(link_id, body.get("linktree_id"), ip, sid))
        except Exception as e:
            log.error(f"❌ Click analytics error: {e}")
        return jsonify({"success": True}), 200

    # --- ADMIN ---

    @app.route('/analytics/flush', methods=['POST'])
    def analytics_flush():
        admin = _admin()
        if not admin:
            return _unauthorized()
        try:
            flushed = runner(pipeline.flush_now(admin))
        except FlushSkipped as e:
            log.warning(f"⚠️ Analytics flush skipped: {e}")
            return _no_store(jsonify({"error": "Flush skipped", "message": str(e)}), 503)
        except Exception as e:
            log.error(f"❌ Analytics flush error: {e}")
            return _no_store(jsonify({"error": "Failed to flush queues", "message": str(e)}), 500)
        return _no_store(jsonify({"success": True, "message": "Queues flushed successfully", "flushed": flushed}))

    @app.route('/analytics/clear-all', methods=['DELETE'])
    def analytics_clear_all():
        admin = _admin()
        if not admin:
            return _unauthorized()
        try:
            deleted = runner(pipeline.clear_all(admin))
        except Exception as e:
            log.error(f"❌ Error clearing analytics: {e}")
            return _no_store(jsonify({"error": "Failed to clear analytics", "message": str(e)}), 500)
        return _no_store(jsonify({
            "success": True,
            "message": "All analytics data cleared successfully",
            "deleted": deleted,
        }))

    @app.route('/analytics/totals')
    def analytics_totals():
        if not _admin():
            return _unauthorized()
        try:
            data = runner(pipeline.storage.get_total_analytics())
        except Exception as e:
            log.error(f"❌ Error fetching totals: {e}")
            return _no_store(jsonify({"error": "Failed to fetch analytics", "message": str(e)}), 500)
        return _no_store(jsonify({"data": data}))

    @app.route('/analytics/status')
    def analytics_status():
        if not _admin():
            return _unauthorized()
        return _no_store(jsonify(runner(check_pipeline(pipeline))))

    @app.route('/linktrees/<linktree_id>/analytics')
    def linktree_analytics(linktree_id):
        if not _admin():
            return _unauthorized()
        try:
            error = _checked_linktree(linktree_id)
            if error:
                return error
            data = runner(pipeline.storage.get_linktree_analytics(linktree_id))
        except Exception as e:
            log.error(f"❌ Error fetching analytics for {linktree_id}: {e}")
            return _no_store(jsonify({"error": "Failed to fetch analytics", "message": str(e)}), 500)
        return _no_store(jsonify({"data": data}))

    @app.route('/linktrees/<linktree_id>/analytics/flush', methods=['POST'])
    def linktree_analytics_flush(linktree_id):
        admin = _admin()
        if not admin:
            return _unauthorized()
        if not is_identifier(linktree_id):
            return _no_store(jsonify({"error": "Invalid linktree ID format"}), 400)
        try:
            flushed = runner(pipeline.flush_linktree(linktree_id, admin))
        except FlushSkipped as e:
            log.warning(f"⚠️ Analytics flush skipped: {e}")
            return _no_store(jsonify({"error": "Flush skipped", "message": str(e)}), 503)
        except Exception as e:
            log.error(f"❌ Analytics flush error: {e}")
            return _no_store(jsonify({"error": "Failed to flush queues", "message": str(e)}), 500)
        return _no_store(jsonify({"success": True, "message": "Queues flushed successfully", "flushed": flushed}))

    @app.route('/linktrees/<linktree_id>/analytics/clear', methods=['DELETE'])
    def linktree_analytics_clear(linktree_id):
        admin = _admin()
        if not admin:
            return _unauthorized()
        try:
            error = _checked_linktree(linktree_id)
            if error:
                return error
            deleted = runner(pipeline.clear_linktree(linktree_id, admin))
        except Exception as e:
            log.error(f"❌ Error clearing analytics for {linktree_id}: {e}")
            return _no_store(jsonify({"error": "Internal server error", "message": str(e)}), 500)
        return _no_store(jsonify({
            "success": True,
            "message": "Analytics data cleared successfully",
            "deleted": deleted,
        }))

    return app


def start_server(app, port=8080):
    """Serve the Flask app from a daemon thread"""
    server_thread = threading.Thread(
        target=app.run,
        kwargs={"host": "0.0.0.0", "port": port, "threaded": True, "use_reloader": False},
        name="analytics-http",
    )
    server_thread.daemon = True
    server_thread.start()
    log.info(f"✅ Analytics server started on port {port}")
    return server_thread
