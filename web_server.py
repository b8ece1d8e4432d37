import logging

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from errors import (
    BackendError,
    BackendUnavailable,
    GatewayError,
    InvalidRequest,
    NotFound,
    PathViolation,
    RangeNotSatisfiable,
)
from range_streaming import build_stream_response
from torrent_view import normalize

log = logging.getLogger(__name__)

app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024

# Filled in by main.py at startup; tests swap in fakes.
WEB_CONFIG = {
    'backend': None,
    'ingestor': None,
    'host': '0.0.0.0',
    'port': 3000,
}


def _backend():
    backend = WEB_CONFIG['backend']
    if backend is None:
        raise BackendUnavailable(details="No torrent backend configured")
    return backend


def _int_arg(name, default):
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidRequest(f"{name} must be an integer.")


def _flag_arg(name):
    return (request.args.get(name) or '').strip().lower() in ('1', 'true', 'yes', 'on')


@app.errorhandler(GatewayError)
def handle_gateway_error(e):
    if isinstance(e, NotFound):
        log.debug("%s %s: %s", request.method, request.path, e.message)
    elif isinstance(e, PathViolation):
        log.warning("Path violation on %s %s from %s", request.method, request.path, request.remote_addr)
    elif isinstance(e, BackendError):
        log.error("%s %s failed: %s (%s)", request.method, request.path, e.message, e.details)
    res = jsonify(e.to_dict())
    res.status_code = e.status_code
    if isinstance(e, RangeNotSatisfiable):
        res.headers['Content-Range'] = f'bytes */{e.size}'
    return res


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return jsonify({'error': e.description or e.name}), e.code or 500


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    log.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({'error': "Internal server error"}), 500


@app.route('/api/health')
def health():
    backend = WEB_CONFIG['backend']
    return jsonify({'status': 'ok', 'backend': backend.name if backend else None})


@app.route('/api/torrents')
def list_torrents():
    return jsonify({'torrents': [normalize(h).to_dict() for h in _backend().list()]})


@app.route('/api/torrents', methods=['POST'])
def add_torrent():
    ingestor = WEB_CONFIG['ingestor']
    if ingestor is None:
        raise BackendUnavailable(details="No torrent backend configured")

    magnet = None
    torrent_bytes = None
    if request.is_json:
        body = request.get_json(silent=True)
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise InvalidRequest("Request body must be a JSON object.")
        magnet = body.get('magnetUri')
    else:
        magnet = request.form.get('magnetUri')
        upload = request.files.get('torrent')
        if upload:
            torrent_bytes = upload.read() or None
    if magnet is not None and not isinstance(magnet, str):
        raise InvalidRequest("magnetUri must be a string.")

    try:
        view = ingestor.ingest(magnet_uri=magnet, torrent_bytes=torrent_bytes)
    except BackendError as e:
        raise BackendError("Failed to add torrent", details=e.details or e.message) from e
    return jsonify({'torrent': view.to_dict()}), 201


@app.route('/api/torrents/<info_hash>')
def get_torrent(info_hash):
    return jsonify({'torrent': normalize(_backend().get(info_hash)).to_dict()})


@app.route('/api/torrents/<info_hash>/files')
def torrent_files(info_hash):
    view = normalize(_backend().get(info_hash))
    return jsonify({'files': [f.to_dict() for f in view.files]})


@app.route('/api/torrents/<info_hash>/files/<int:file_index>/download')
def download_file(info_hash, file_index):
    resolved = _backend().resolve_file(info_hash, file_index)
    return build_stream_response(resolved, request.headers.get('Range'), as_attachment=True)


@app.route('/api/torrents/<info_hash>/stream')
def stream_file(info_hash):
    file_index = _int_arg('fileIndex', 0)
    resolved = _backend().resolve_file(info_hash, file_index)
    return build_stream_response(resolved, request.headers.get('Range'))


@app.route('/api/torrents/<info_hash>', methods=['DELETE'])
def delete_torrent(info_hash):
    _backend().remove(info_hash, delete_files=_flag_arg('deleteFiles'))
    return jsonify({'success': True})


def run_server():
    log.info("Torrent media server running on http://localhost:%s", WEB_CONFIG['port'])
    app.run(host=WEB_CONFIG['host'], port=WEB_CONFIG['port'], threaded=True)
