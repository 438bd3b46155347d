import datetime
import logging
import os
import threading
import uuid

from flask import Flask, jsonify, request, send_from_directory
from werkzeug.exceptions import NotFound

from escl.config import ScannerSettings
from escl.errors import (
    DeviceBusyError,
    EsclError,
    InvalidParameterError,
    OperationCanceledError,
    ProtocolError,
    full_message,
)
from escl.models import DocumentFormat, InputSource, JobState, ScanJobRequest
from escl.storage import FileImageSink
from scanner_manager import ScannerManager

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'jpg', 'jpeg', 'pdf'}

INPUT_SOURCES = {
    'flatbed': InputSource.FLATBED,
    'platen': InputSource.FLATBED,
    'feeder': InputSource.FEEDER,
    'adf': InputSource.FEEDER,
}

DOCUMENT_FORMATS = {
    'jpg': DocumentFormat.JPEG,
    'jpeg': DocumentFormat.JPEG,
    'pdf': DocumentFormat.PDF,
    'raw': DocumentFormat.OCTET_STREAM,
    'octet-stream': DocumentFormat.OCTET_STREAM,
}


def spawn_thread(target, *args):
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


def device_info(index, device):
    return {
        'index': index,
        'name': device.name,
        'url': device.base_url,
        'host': device.host,
        'uuid': device.uuid,
        'flatbed': device.advertised_flatbed,
        'feeder': device.advertised_feeder,
        'duplex': device.advertised_duplex,
    }


def capabilities_info(caps):
    return {
        'make_and_model': caps.make_and_model,
        'intents': list(caps.intents),
        'color_modes': [m.value for m in caps.color_modes],
        'resolutions': list(caps.resolutions),
        'document_formats': [f.value for f in caps.document_formats],
        'input_sources': [str(s) for s in caps.input_sources],
        'duplex': caps.has_duplex,
    }


def scan_request_from_json(data):
    """Build a ScanJobRequest from the JSON body of /api/scan"""
    source = data.get('input_source')
    if source is not None:
        source = INPUT_SOURCES.get(str(source).lower(), source)
    doc_format = data.get('format')
    if doc_format is not None:
        doc_format = DOCUMENT_FORMATS.get(str(doc_format).lower(), doc_format)
    resolution = data.get('resolution')
    if resolution is not None:
        try:
            resolution = int(resolution)
        except (TypeError, ValueError):
            raise InvalidParameterError(f"Invalid resolution '{resolution}'", field='resolution', value=resolution)
    return ScanJobRequest(
        input_source=source,
        intent=data.get('intent'),
        color_mode=data.get('color_mode'),
        resolution=resolution,
        document_format=doc_format,
        duplex=bool(data.get('duplex', False)),
    )


def create_app(manager=None, settings=None, spawn=spawn_thread):
    settings = settings or ScannerSettings.from_env()
    manager = manager or ScannerManager(settings)

    app = Flask(__name__)
    app.config['UPLOAD_FOLDER'] = str(settings.output_dir)
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

    # Scanner detection and scan job state shared between requests
    detection = {'status': 'initializing', 'last': None, 'error': None}
    scan_status = {}
    cancel_events = {}

    def detect_scanners():
        """Search the network for eSCL scanners"""
        detection['status'] = 'detecting'
        try:
            devices = manager.discover()
        except Exception as e:
            # zeroconf raises OSError when no multicast interface is usable
            logger.error(f"Scanner detection failed: {e}")
            detection['status'] = 'error'
            detection['error'] = str(e)
            return
        detection['status'] = 'completed'
        detection['error'] = None
        detection['last'] = datetime.datetime.now()
        logger.info(f"Detection completed! Found {len(devices)} scanner(s)")

    def perform_scan(scan_id, session, job, cancel):
        """Retrieve every document of a job in a background thread"""
        sink = FileImageSink(app.config['UPLOAD_FOLDER'], prefix=f"scan_{scan_id}_")
        status = scan_status[scan_id]
        try:
            for image in session.images(job, cancel):
                path = sink.save_image(image)
                status['pages'].append(path.name)
            status['status'] = 'completed'
        except OperationCanceledError:
            status['status'] = 'canceled'
        except Exception as e:
            logger.exception(f"Scan {scan_id} failed")
            status['status'] = 'error'
            status['error'] = full_message(e)
        finally:
            if session.job_state(job) is JobState.ACTIVE:
                try:
                    session.cancel_job(job)
                except ProtocolError as e:
                    logger.warning(f"Could not cancel scan job {job.job_id}: {e}")
            session.close()
            cancel_events.pop(scan_id, None)

    def lookup_device(index):
        devices = manager.list_scanners()
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(devices):
            return None
        return devices[index]

    app.extensions['escl'] = {
        'manager': manager,
        'detect_scanners': detect_scanners,
        'scan_status': scan_status,
    }

    @app.route('/api/scanners', methods=['GET'])
    def get_scanners():
        """Get list of discovered scanners"""
        devices = manager.list_scanners()
        return jsonify({
            'success': True,
            'scanners': [device_info(i, d) for i, d in enumerate(devices)],
            'detection_status': detection['status'],
            'last_detection': detection['last'].isoformat() if detection['last'] else None,
            'total_count': len(devices)
        })

    @app.route('/api/scanners/refresh', methods=['POST'])
    def refresh_scanners():
        """Manually refresh scanner list"""
        if detection['status'] == 'detecting':
            return jsonify({'success': False, 'error': 'Scanner detection already running'}), 409
        detection['status'] = 'detecting'
        spawn(detect_scanners)
        return jsonify({
            'success': True,
            'message': 'Scanner refresh started (this may take a few seconds)'
        })

    @app.route('/api/scanners/<int:index>/capabilities', methods=['GET'])
    def get_capabilities(index):
        """Get the capabilities of a discovered scanner"""
        device = lookup_device(index)
        if device is None:
            return jsonify({'success': False, 'error': 'Invalid scanner index'}), 404
        try:
            caps = manager.get_capabilities(device, refresh=request.args.get('refresh') == '1')
        except ProtocolError as e:
            return jsonify({'success': False, 'error': full_message(e)}), 502
        return jsonify({'success': True, 'capabilities': capabilities_info(caps)})

    @app.route('/api/scan', methods=['POST'])
    def start_scan():
        """Start scanning from the selected scanner"""
        data = request.get_json(silent=True) or {}
        scanner_index = data.get('scanner_index')
        if scanner_index is None:
            return jsonify({'success': False, 'error': 'Scanner index is required'}), 400

        device = lookup_device(scanner_index)
        if device is None:
            return jsonify({'success': False, 'error': 'Invalid scanner index'}), 400

        session = manager.open_device(device)
        try:
            job = session.create_job(scan_request_from_json(data))
        except InvalidParameterError as e:
            session.close()
            return jsonify({'success': False, 'error': str(e), 'field': e.field}), 400
        except DeviceBusyError as e:
            session.close()
            return jsonify({'success': False, 'error': str(e)}), 409
        except ProtocolError as e:
            session.close()
            return jsonify({'success': False, 'error': full_message(e)}), 502

        scan_id = str(uuid.uuid4())
        cancel = threading.Event()
        cancel_events[scan_id] = cancel
        scan_status[scan_id] = {
            'status': 'scanning',
            'job_id': job.job_id,
            'pages': [],
            'error': None,
            'scanner_name': device.name,
            'started': datetime.datetime.now().isoformat()
        }
        spawn(perform_scan, scan_id, session, job, cancel)

        return jsonify({
            'success': True,
            'scan_id': scan_id,
            'message': f'Scan started from {device.name}'
        })

    @app.route('/api/scan/status/<scan_id>', methods=['GET'])
    def get_scan_status(scan_id):
        """Get status of a scan operation"""
        if scan_id not in scan_status:
            return jsonify({'success': False, 'error': 'Scan ID not found'}), 404
        return jsonify({'success': True, 'scan_status': scan_status[scan_id]})

    @app.route('/api/scan/<scan_id>/cancel', methods=['POST'])
    def cancel_scan(scan_id):
        """Ask a running scan to stop"""
        if scan_id not in scan_status:
            return jsonify({'success': False, 'error': 'Scan ID not found'}), 404
        cancel = cancel_events.get(scan_id)
        if cancel is None:
            return jsonify({'success': False, 'error': 'Scan is not running'}), 409
        cancel.set()
        return jsonify({'success': True, 'message': 'Cancel requested'})

    @app.route('/api/download/<filename>')
    def download_scan(filename):
        """Download a scanned file"""
        try:
            return send_from_directory(os.path.abspath(app.config['UPLOAD_FOLDER']), filename, as_attachment=True)
        except NotFound:
            return jsonify({'success': False, 'error': 'File not found'}), 404

    @app.route('/api/scans', methods=['GET'])
    def list_scans():
        """List all available scans"""
        scans = []
        for filename in os.listdir(app.config['UPLOAD_FOLDER']):
            if filename.rsplit('.', 1)[-1].lower() in ALLOWED_EXTENSIONS:
                filepath = os.path.join(app.config['UPLOAD_FOLDER'], filename)
                stat = os.stat(filepath)
                scans.append({
                    'filename': filename,
                    'size': stat.st_size,
                    'modified': datetime.datetime.fromtimestamp(stat.st_mtime).isoformat()
                })

        # Newest first
        scans.sort(key=lambda x: x['modified'], reverse=True)
        return jsonify({'success': True, 'scans': scans})

    return app


if __name__ == '__main__':
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    app = create_app()
    print("🚀 Starting eSCL Scanner Application...")
    print("📡 Searching for network scanners in background...")
    spawn_thread(app.extensions['escl']['detect_scanners'])
    port = int(os.getenv("PORT", 5000))
    print(f"🌐 Web API will be available at http://localhost:{port}")
    app.run(host=os.getenv("HOST", "127.0.0.1"), port=port)
