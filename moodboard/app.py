"""Flask application for the crypto mood dashboard backend."""
import argparse
import hmac
import logging
import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, Flask, Response, current_app, g, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from moodboard.backoff import BackoffStore
from moodboard.cache import CachePolicy, ResponseCache, iso_now
from moodboard.config import load_config
from moodboard.coordinator import RetryPolicy, UpstreamCoordinator
from moodboard.errors import UpstreamError
from moodboard.handlers import STALE_IF_ERROR, MoodService, Served, UnknownCoin, is_force_refresh, resolve_coin
from moodboard.kv import KeyValueStore, kv_from_config
from moodboard.logging_config import REQUEST_ID_CTX, log_config, setup_logging
from moodboard.metrics import emit_coordinator_prometheus, emit_counter_block, emit_prometheus
from moodboard.providers import SUPPORTED_COINS
from moodboard.schemas import ErrorEnvelope, HealthResponse, PurgeResponse
from moodboard.sentinel import LegacySentinel
from moodboard.transport import RequestsTransport

logger = logging.getLogger(__name__)

CACHE_CONTROL = 's-maxage=60, max-age=0, must-revalidate'
STALE_WARNING = '110 - "stale response used due to upstream error"'
EXPOSED_HEADERS = ['X-Cache-Status', 'X-Cache-Source', 'X-DO-Age', 'X-Latency-ms', 'X-Request-ID',
                   'Retry-After', 'Warning']

api_bp = Blueprint('moodboard', __name__)


@dataclass
class Services:
    config: Dict[str, Any]
    kv: KeyValueStore
    coordinator: UpstreamCoordinator
    cache: ResponseCache
    sentinel: LegacySentinel
    mood: MoodService
    started_at: float = field(default_factory=time.time)
    error_stats: Dict[str, int] = field(default_factory=lambda: {'5xx': 0})
    lock: threading.Lock = field(default_factory=threading.Lock)


def services() -> Services:
    return current_app.extensions['moodboard']


def _error_body(kind: str, message: str, detail: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {'error': {'kind': kind, 'message': message, 'detail': detail or {}}, 'timestamp': iso_now()}


def _data_response(served: Served) -> Response:
    resp = jsonify(served.payload)
    resp.headers['X-Cache-Status'] = served.cache_status
    resp.headers['X-Cache-Source'] = 'cache' if served.from_cache else 'api'
    resp.headers['X-DO-Age'] = str(int(served.age_seconds))
    resp.headers['X-Latency-ms'] = str(int(round(served.latency_ms)))
    resp.headers['Cache-Control'] = CACHE_CONTROL
    if served.cache_status == STALE_IF_ERROR:
        resp.headers['Warning'] = STALE_WARNING
    return resp


# --------------------------------------------------------------- data routes
@api_bp.route('/coins')
def coins():
    return jsonify([c.to_dict() for c in SUPPORTED_COINS.values()])


@api_bp.route('/price')
def price():
    coin = resolve_coin(request.args.get('coin'))
    return _data_response(services().mood.price(coin, force=is_force_refresh(request.args)))


@api_bp.route('/history')
def history():
    mood = services().mood
    coin = resolve_coin(request.args.get('coin'))
    days = mood.clamp_days(request.args.get('days', 7))
    return _data_response(mood.history(coin, days, force=is_force_refresh(request.args)))


@api_bp.route('/news')
def news():
    coin = resolve_coin(request.args.get('coin'))
    return _data_response(services().mood.news(coin, force=is_force_refresh(request.args)))


@api_bp.route('/api/sentiment-summary')
def sentiment_summary():
    coin = resolve_coin(request.args.get('coin'))
    return _data_response(services().mood.sentiment_summary(coin, force=is_force_refresh(request.args)))


# ---------------------------------------------------------------------- admin
@api_bp.route('/admin/purge-legacy-cache', methods=['POST'])
def purge_legacy_cache():
    svc = services()
    body = request.get_json(silent=True) or {}
    token = (body.get('token') if isinstance(body, dict) else None) or request.headers.get('X-Admin-Token')
    expected = svc.config.get('ADMIN_PURGE_TOKEN')
    if not expected or not token or not hmac.compare_digest(str(token), str(expected)):
        logger.warning('admin.purge_forbidden from %s', request.remote_addr, extra={'event': 'purge_forbidden'})
        return jsonify(_error_body('Forbidden', 'invalid or missing admin token')), 403
    report = svc.mood.purge_legacy()
    out = PurgeResponse(
        status='ok',
        deletedCount=report.deleted_count,
        deletedKeys=report.deleted_keys,
        errors=report.errors,
        timestamp=iso_now(),
    )
    return jsonify(out.model_dump())


# --------------------------------------------------------- health + metrics
@api_bp.route('/api/health')
def api_health():
    svc = services()
    kv_ok = svc.kv.ping()
    out = HealthResponse(
        status='ok' if kv_ok else 'degraded',
        uptime_seconds=round(time.time() - svc.started_at, 2),
        errors_5xx=svc.error_stats['5xx'],
        kv_backend=svc.kv.name,
        kv_ok=kv_ok,
    )
    return jsonify(out.model_dump())


@api_bp.route('/api/metrics')
def metrics_json():
    svc = services()
    return jsonify({
        'status': 'ok',
        'uptime_seconds': round(time.time() - svc.started_at, 2),
        'errors_5xx': svc.error_stats['5xx'],
        'coordinator': svc.coordinator.snapshot(),
        'cache': svc.cache.snapshot(),
        'handlers': svc.mood.handler.snapshot(),
        'sentinel': svc.sentinel.snapshot(),
    })


@api_bp.route('/metrics.prom')
def metrics_prom():
    """Text exposition without prometheus_client."""
    svc = services()
    lines: list[str] = []
    emit_prometheus(lines, 'mood_uptime_seconds', round(time.time() - svc.started_at, 2), 'gauge',
                    'Seconds since app start')
    emit_prometheus(lines, 'mood_errors_5xx_total', svc.error_stats['5xx'], 'counter', 'HTTP 5xx responses served')
    emit_coordinator_prometheus(lines, svc.coordinator.snapshot())
    emit_counter_block(lines, 'cache', svc.cache.snapshot())
    emit_counter_block(lines, 'handler', svc.mood.handler.snapshot())
    emit_counter_block(lines, 'sentinel', svc.sentinel.snapshot())
    return Response('\n'.join(lines) + '\n', content_type='text/plain; version=0.0.4; charset=utf-8')


# ------------------------------------------------------------ error mapping
@api_bp.app_errorhandler(UpstreamError)
def handle_upstream_error(e: UpstreamError):
    envelope = ErrorEnvelope(**e.envelope()).model_dump(exclude_none=True)
    resp = jsonify({'error': envelope, 'timestamp': iso_now()})
    resp.status_code = e.http_status
    if envelope.get('retry_after') is not None:
        resp.headers['Retry-After'] = str(max(1, envelope['retry_after']))
    resp.headers['X-Cache-Status'] = 'miss'
    resp.headers['Cache-Control'] = 'no-store'
    return resp


@api_bp.app_errorhandler(UnknownCoin)
def handle_unknown_coin(e: UnknownCoin):
    return jsonify(_error_body('BadRequest', str(e), {'supported': sorted(SUPPORTED_COINS)})), 400


@api_bp.app_errorhandler(HTTPException)
def handle_http_exception(e: HTTPException):
    return jsonify(_error_body(e.name.replace(' ', ''), e.description or e.name)), e.code


@api_bp.app_errorhandler(Exception)
def handle_unexpected(e: Exception):
    logger.exception('Unhandled error on %s %s', request.method, request.path)
    return jsonify(_error_body('InternalError', 'internal server error')), 500


# --------------------------------------------------------------------- hooks
@api_bp.before_app_request
def _before_request():
    rid = request.headers.get('X-Request-ID') or uuid.uuid4().hex
    g.request_id = rid
    g.request_id_token = REQUEST_ID_CTX.set(rid)
    g.start_time = time.time()


@api_bp.after_app_request
def _after_request(resp):
    if 500 <= resp.status_code < 600:
        svc = services()
        with svc.lock:
            svc.error_stats['5xx'] += 1
    rid = g.get('request_id')
    if rid:
        resp.headers['X-Request-ID'] = rid
    return resp


@api_bp.teardown_app_request
def _teardown_request(exc):
    token = g.pop('request_id_token', None)
    if token is not None:
        REQUEST_ID_CTX.reset(token)


def create_app(config: Optional[Dict[str, Any]] = None, kv: Optional[KeyValueStore] = None, transport=None,
               clock: Callable[[], float] = time.time, sleep: Callable[[float], None] = time.sleep,
               rng: Optional[random.Random] = None) -> Flask:
    """Build the Flask app; collaborators are injectable for tests."""
    cfg = config if config is not None else load_config()
    kv = kv if kv is not None else kv_from_config(cfg)
    if transport is None:
        transport = RequestsTransport(
            timeout=(cfg['FETCH_TIMEOUT_CONNECT'], cfg['FETCH_TIMEOUT_READ']),
            pool_maxsize=cfg.get('HTTP_POOL_MAXSIZE', 32),
        )
    coordinator = UpstreamCoordinator(transport, BackoffStore(kv, clock=clock), RetryPolicy.from_config(cfg),
                                      clock=clock, sleep=sleep, rng=rng)
    cache = ResponseCache(
        kv,
        CachePolicy(ttl_seconds=cfg['PRICE_TTL_SECONDS'], max_age_seconds=cfg['CACHE_MAX_AGE_SECONDS']),
        legacy_tags=cfg.get('LEGACY_PROVIDERS') or (),
        current_tags=cfg.get('CURRENT_PROVIDERS') or (),
        clock=clock,
    )
    sentinel = LegacySentinel(cache)
    mood = MoodService(cfg, coordinator, cache, sentinel, clock=clock)

    if not cfg.get('NEWSAPI_KEY'):
        logger.warning('NEWSAPI_KEY not set; /news and sentiment summaries will fail upstream')
    if not cfg.get('ADMIN_PURGE_TOKEN'):
        logger.warning('ADMIN_PURGE_TOKEN not set; legacy cache purge endpoint is disabled')

    app = Flask(__name__)
    app.json.sort_keys = False
    origins_env = cfg.get('CORS_ALLOWED_ORIGINS') or '*'
    origins = '*' if origins_env == '*' else [o.strip() for o in origins_env.split(',') if o.strip()]
    CORS(app, origins=origins, expose_headers=EXPOSED_HEADERS)
    app.extensions['moodboard'] = Services(config=cfg, kv=kv, coordinator=coordinator, cache=cache,
                                           sentinel=sentinel, mood=mood)
    app.register_blueprint(api_bp)
    logger.info('Upstream fetch worst case %.1fs (%d attempts)', coordinator.worst_case_seconds,
                coordinator.policy.max_attempts)
    return app


def parse_arguments():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(description='Crypto Mood Dashboard backend')
    parser.add_argument('--port', type=int, help='Port to run the server on')
    parser.add_argument('--host', type=str, help='Host to bind the server to')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode')
    return parser.parse_args()


def main():
    args = parse_arguments()
    setup_logging()
    cfg = load_config()
    if args.host:
        cfg['HOST'] = args.host
    if args.port:
        cfg['PORT'] = args.port
    if args.debug:
        cfg['DEBUG'] = True
    log_config(cfg)
    app = create_app(cfg)
    app.run(host=cfg['HOST'], port=cfg['PORT'], debug=cfg['DEBUG'], threaded=True)


if __name__ == '__main__':
    main()
