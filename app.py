import os
import json
import logging
import ipaddress
from io import BytesIO
import time

from flask import Flask, Response, jsonify, request, send_file
from flask_caching import Cache
from flask_limiter import Limiter

from utils.errors import LookupFailed, ValidationError
from utils.export import MIME_TYPES, export_results, validate_results
from utils.lookups import calculate_subnet, clean_text, dns_lookup, whois_lookup
from utils.ports import list_port_groups
from utils.portscan import BATCH_SIZE, DEFAULT_TIMEOUT_MS, PortScan, build_scan_request, scan_ports, validate_export_format


def env_flag(name, default="false"):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# === Flask App ===
app = Flask(__name__)
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'change-me-in-production')
app.config['SCAN_BATCH_SIZE'] = int(os.getenv('SCAN_BATCH_SIZE', BATCH_SIZE))
app.config['SCAN_DEFAULT_TIMEOUT_MS'] = int(os.getenv('SCAN_DEFAULT_TIMEOUT_MS', DEFAULT_TIMEOUT_MS))
app.config['ALLOW_PRIVATE_TARGETS'] = env_flag('ALLOW_PRIVATE_TARGETS')
app.config['RATELIMIT_ENABLED'] = env_flag('RATELIMIT_ENABLED', 'true')

REDIS_HOST = os.getenv('REDIS_HOST')
REDIS_PORT = int(os.getenv('REDIS_PORT', 6379))
if REDIS_HOST:
    app.config['CACHE_TYPE'] = 'RedisCache'
    app.config['CACHE_REDIS_URL'] = f"redis://{REDIS_HOST}:{REDIS_PORT}/2"
    limiter_storage = f"redis://{REDIS_HOST}:{REDIS_PORT}/1"
else:
    app.config['CACHE_TYPE'] = 'SimpleCache'
    limiter_storage = "memory://"

cache = Cache(app)

# === Logging ===
logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO').upper(), format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')
logger = logging.getLogger('netdiag')
logger.info(f"netdiag starting (batch size {app.config['SCAN_BATCH_SIZE']}, "
            f"private targets {'allowed' if app.config['ALLOW_PRIVATE_TARGETS'] else 'blocked'})")


# === REAL IP FOR REVERSE PROXY ===
TRUSTED_PROXIES = [ipaddress.ip_network(n) for n in ('127.0.0.1/32', '::1/128', '10.0.0.0/8', '172.16.0.0/12', '192.168.0.0/16')]


def is_trusted_proxy(addr):
    try:
        ip = ipaddress.ip_address(addr)
    except ValueError:
        return False
    return any(ip.version == net.version and ip in net for net in TRUSTED_PROXIES)


def get_real_ip():
    remote = request.remote_addr
    if remote and is_trusted_proxy(remote):
        xff = request.headers.get('X-Forwarded-For')
        if xff:
            for ip in [ip.strip() for ip in xff.split(',')]:
                if ip and not is_trusted_proxy(ip):
                    return ip
        real_ip = request.headers.get('X-Real-IP')
        if real_ip and not is_trusted_proxy(real_ip):
            return real_ip
    return remote or '127.0.0.1'


# Limiter
limiter = Limiter(key_func=get_real_ip, app=app, storage_uri=limiter_storage)


# === Error handlers ===
@app.errorhandler(ValidationError)
def handle_validation_error(e):
    logger.info(f"Rejected request to {request.path}: {e}")
    return jsonify(e.to_dict()), 400


@app.errorhandler(LookupFailed)
def handle_lookup_failed(e):
    return jsonify({'error': str(e)}), 502


def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('body', 'a JSON object is required')
    return data


def split_param(name):
    raw = request.args.get(name, '')
    return [part.strip() for part in raw.split(',') if part.strip()]


def attachment(content, fmt):
    filename = f"port-scan-{int(time.time() * 1000)}.{fmt.lower()}"
    return send_file(
        BytesIO(content.encode('utf-8')),
        mimetype=MIME_TYPES[fmt],
        as_attachment=True,
        download_name=filename,
    )


# ----------------------------------------------------------------------
# PORT SCANNER ENDPOINTS – engine lives in utils/portscan.py
# ----------------------------------------------------------------------
@app.route('/api/port-scanner/scan', methods=['POST'])
@limiter.limit("20 per minute")
def port_scan():
    data = json_body()
    scan_req = build_scan_request(
        data.get('targetIp'),
        port_range=data.get('portRange'),
        port_list=data.get('portList'),
        groups=data.get('portGroups'),
        protocol=data.get('protocol', 'TCP'),
        timeout=data.get('timeout'),
        default_timeout=app.config['SCAN_DEFAULT_TIMEOUT_MS'],
        export_format=data.get('exportFormat'),
        allow_private=app.config['ALLOW_PRIVATE_TARGETS'],
    )
    logger.info(f"Scan requested by {get_real_ip()} for {scan_req.target_ip}")
    summary = scan_ports(scan_req, batch_size=app.config['SCAN_BATCH_SIZE'])
    results = summary.by_protocol()

    if scan_req.export_format:
        return attachment(export_results(results, scan_req.export_format), scan_req.export_format)
    return jsonify(results)


@app.route('/api/port-scanner/stream')
@limiter.limit("10 per minute")
def port_scan_stream():
    args = request.args
    port_range = None
    if args.get('startPort') is not None or args.get('endPort') is not None:
        port_range = [args.get('startPort'), args.get('endPort')]
    scan_req = build_scan_request(
        args.get('targetIp'),
        port_range=port_range,
        port_list=split_param('portList') or None,
        groups=split_param('portGroups') or None,
        protocol=args.get('protocol', 'TCP'),
        timeout=args.get('timeout'),
        default_timeout=app.config['SCAN_DEFAULT_TIMEOUT_MS'],
        allow_private=app.config['ALLOW_PRIVATE_TARGETS'],
    )
    scan = PortScan(scan_req, batch_size=app.config['SCAN_BATCH_SIZE'])
    logger.info(f"Streaming scan requested by {get_real_ip()} for {scan_req.target_ip}")

    def generate():
        progress_iter = iter(scan)
        try:
            for progress in progress_iter:
                yield f"data: {json.dumps(progress.to_event())}\n\n"
        finally:
            # closing the generator on client disconnect stops the scan between batches
            progress_iter.close()
            if not scan.finished:
                logger.warning(f"Stream for {scan_req.target_ip} closed at {scan.scanned}/{scan.total} ports")

    return Response(generate(), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'})


@app.route('/api/port-scanner/export', methods=['POST'])
@limiter.limit("30 per minute")
def port_scan_export():
    data = json_body()
    fmt = validate_export_format(data.get('format'), field='format')
    if fmt is None:
        raise ValidationError('format', 'export format is required')
    results = validate_results(data.get('results'))
    return attachment(export_results(results, fmt), fmt)


@app.route('/api/port-scanner/groups')
def port_groups():
    return jsonify(list_port_groups())


# ----------------------------------------------------------------------
# OTHER DIAGNOSTICS
# ----------------------------------------------------------------------
@app.route('/api/ip')
def show_ip():
    return jsonify({
        'remote_addr': request.remote_addr,
        'xff': request.headers.get('X-Forwarded-For'),
        'x_real_ip': request.headers.get('X-Real-IP'),
        'user_agent': request.headers.get('User-Agent'),
        'real_ip': get_real_ip()
    })


@app.route('/api/dns', methods=['POST'])
@limiter.limit("30 per minute")
def api_dns_lookup():
    data = json_body()
    domain = clean_text(data.get('domain'), 'domain')
    record_type = (clean_text(data.get('recordType'), 'recordType') or 'A').upper()
    server = clean_text(data.get('server'), 'server') or None

    cache_key = f"dns:{domain}:{record_type}:{server}"
    cached = cache.get(cache_key)
    if cached is not None:
        logger.debug(f"Cache hit for {cache_key}")
        return jsonify(cached)

    result = dns_lookup(domain, record_type, server)
    cache.set(cache_key, result, timeout=600)
    return jsonify(result)


@app.route('/api/whois', methods=['POST'])
@limiter.limit("30 per minute")
def api_whois():
    domain = clean_text(json_body().get('domain'), 'domain').lower()
    cache_key = f"whois:{domain}"
    cached = cache.get(cache_key)
    if cached is not None:
        return jsonify(cached)

    result = whois_lookup(domain)
    cache.set(cache_key, result, timeout=600)
    return jsonify(result)


@app.route('/api/subnet', methods=['POST'])
def api_subnet():
    data = json_body()
    return jsonify(calculate_subnet(data.get('networkAddress'), data.get('mask')))


# === Run ===
if __name__ == '__main__':
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 5000)), debug=False)
