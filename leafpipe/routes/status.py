from flask import Blueprint, current_app, jsonify

status_bp = Blueprint("status", __name__)


@status_bp.get("/api/health")
def health():
    return jsonify({"status": "ok"})


@status_bp.get("/api/status")
def status():
    pipeline = current_app.config.get("PIPELINE")
    if pipeline is None:
        return jsonify({"error": "Pipeline not running"}), 503
    try:
        return jsonify(pipeline.get_status())
    except Exception as e:
        return jsonify({"error": str(e)}), 500
