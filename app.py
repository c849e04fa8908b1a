import logging
from typing import Any, Optional

from flask import Flask, jsonify, request

from artnet import ArtNetNode
from config import Settings, coerce_bool, load_player_config, load_settings
from dmx import build_senders, close_senders
from errors import (
    CorruptRecording,
    EmptyRecording,
    InvalidRecordingFormat,
    RecordingError,
    RecordingNotFound,
)
from recorder import DMXRecorder

logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
LOGGER = logging.getLogger("dmxrec")

app = Flask(__name__)
dmx_recorder: Optional[DMXRecorder] = None


def _recorder() -> Optional[DMXRecorder]:
    return dmx_recorder


def _unavailable() -> Any:
    return jsonify({"error": "Recorder is not running"}), 503


def _recording_error_status(exc: RecordingError) -> int:
    if isinstance(exc, RecordingNotFound):
        return 404
    if isinstance(exc, InvalidRecordingFormat):
        return 400
    if isinstance(exc, (CorruptRecording, EmptyRecording)):
        return 422
    return 500


@app.route("/api/status")
def api_status() -> Any:
    recorder = _recorder()
    if recorder is None:
        return _unavailable()
    return jsonify(recorder.status())


@app.route("/api/config")
def api_config() -> Any:
    recorder = _recorder()
    if recorder is None:
        return _unavailable()
    return jsonify(recorder.describe_config())


@app.route("/api/recordings")
def api_recordings() -> Any:
    recorder = _recorder()
    if recorder is None:
        return _unavailable()
    return jsonify({"recordings": recorder.list_recordings()})


@app.route("/api/record/start", methods=["POST"])
def api_record_start() -> Any:
    recorder = _recorder()
    if recorder is None:
        return _unavailable()
    try:
        path = recorder.start_recording()
    except OSError:
        LOGGER.exception("Unable to start recording")
        return jsonify({"error": "Unable to create recording file"}), 500
    return jsonify({"status": "recording", "file": path.name})


@app.route("/api/record/stop", methods=["POST"])
def api_record_stop() -> Any:
    recorder = _recorder()
    if recorder is None:
        return _unavailable()
    path = recorder.stop_recording()
    if path is None:
        return jsonify({"status": "idle", "file": None})
    return jsonify({"status": "saved", "file": path.name})


@app.route("/api/play", methods=["POST"])
def api_play() -> Any:
    recorder = _recorder()
    if recorder is None:
        return _unavailable()
    data = request.get_json(force=True, silent=True) or {}
    name = data.get("file")
    if name is not None and not isinstance(name, str):
        return jsonify({"error": "'file' must be a string"}), 400

    try:
        session = recorder.play(name)
    except RecordingError as exc:
        return (
            jsonify({"error": str(exc), "available": exc.available}),
            _recording_error_status(exc),
        )
    except Exception:
        LOGGER.exception("Unable to start playback")
        return jsonify({"error": "Unable to start playback"}), 500

    return jsonify({"status": "playing", "session": session.describe()})


@app.route("/api/stop", methods=["POST"])
def api_stop() -> Any:
    recorder = _recorder()
    if recorder is None:
        return _unavailable()
    stopped = recorder.stop_playback()
    return jsonify({"status": "idle", "stopped": stopped})


@app.route("/api/passthrough", methods=["POST"])
def api_passthrough() -> Any:
    recorder = _recorder()
    if recorder is None:
        return _unavailable()
    data = request.get_json(force=True, silent=True) or {}
    enabled: Optional[bool] = None
    if "enabled" in data:
        enabled = coerce_bool(data["enabled"])
        if enabled is None:
            return jsonify({"error": "'enabled' must be a boolean"}), 400
    return jsonify({"passthrough": recorder.toggle_passthrough(enabled)})


@app.route("/api/fps", methods=["POST"])
def api_fps() -> Any:
    recorder = _recorder()
    if recorder is None:
        return _unavailable()
    data = request.get_json(force=True, silent=True) or {}
    raw = data.get("fps")
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        return jsonify({"error": "Missing 'fps' in request body"}), 400
    try:
        fps = recorder.set_fps(float(raw))
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"fps": fps})


@app.route("/api/blackout", methods=["POST"])
def api_blackout() -> Any:
    recorder = _recorder()
    if recorder is None:
        return _unavailable()
    delivered = recorder.blackout()
    return jsonify({"status": "blackout", "outputs": delivered})


@app.route("/api/highlight", methods=["POST"])
def api_highlight() -> Any:
    recorder = _recorder()
    if recorder is None:
        return _unavailable()
    data = request.get_json(force=True, silent=True) or {}
    universe = data.get("universe")
    if isinstance(universe, bool) or not isinstance(universe, int):
        return jsonify({"error": "Missing 'universe' in request body"}), 400
    try:
        recorder.highlight(universe)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"status": "blinking", "universe": universe})


def _serve_app(settings: Settings) -> None:
    app.run(host=settings.http_host, port=settings.http_port)


def main() -> None:
    global dmx_recorder

    settings = load_settings()
    try:
        config = load_player_config(settings.config_path)
    except (OSError, ValueError) as exc:
        LOGGER.error("Unable to load player configuration %s: %s", settings.config_path, exc)
        return

    node = ArtNetNode(
        config.short_name,
        config.long_name,
        bind_ip=settings.bind_ip,
        port=settings.artnet_port,
    )
    try:
        node.open()
    except OSError as exc:
        LOGGER.error("Unable to open Art-Net socket on %s:%s: %s", settings.bind_ip, settings.artnet_port, exc)
        return

    senders = build_senders(config.outputs, node)
    recorder = DMXRecorder(
        config,
        senders,
        settings.recordings_dir,
        fps=settings.fps,
        fade_seconds=settings.fade_seconds,
        idle_timeout=settings.idle_timeout,
        passthrough=settings.passthrough,
    )
    dmx_recorder = recorder
    node.subscribe(config.universes, recorder.handle_inbound)
    recorder.start()
    node.start()

    LOGGER.info("Starting HTTP server on %s:%s.", settings.http_host, settings.http_port)
    try:
        _serve_app(settings)
    finally:
        recorder.close()
        node.close()
        close_senders(senders)
        dmx_recorder = None


if __name__ == "__main__":
    main()
