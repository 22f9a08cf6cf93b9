import logging, json, os
from logging.handlers import RotatingFileHandler
from contextvars import ContextVar

from moodboard.config import masked

# Per-request correlation id, set by the Flask before_request hook
REQUEST_ID_CTX: ContextVar[str | None] = ContextVar('request_id', default=None)

_EXTRA_FIELDS = ('event', 'resource_key', 'cache_key', 'status', 'attempt', 'delay_seconds',
                 'cooldown_until', 'provenance', 'cache_status', 'latency_ms', 'kind')


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401
        # Attach even if None for uniformity
        record.correlation_id = REQUEST_ID_CTX.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        base = {
            'ts': self.formatTime(record, datefmt='%Y-%m-%dT%H:%M:%S%z'),
            'level': record.levelname,
            'msg': record.getMessage(),
            'logger': record.name,
            'correlation_id': getattr(record, 'correlation_id', None),
        }
        for field in _EXTRA_FIELDS:
            if hasattr(record, field):
                base[field] = getattr(record, field)
        if record.exc_info:
            base['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False, default=str)


def setup_logging(level: str | None = None):
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or os.environ.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO))
    # Clear existing handlers to avoid duplicate logs in reloads
    root.handlers = []
    if os.environ.get('LOG_FORMAT', '').lower() == 'json':
        fmt = JsonFormatter()
    else:
        fmt = logging.Formatter('%(asctime)s - %(levelname)s - %(correlation_id)s - %(name)s - %(message)s')
    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    ch.addFilter(CorrelationIdFilter())
    root.addHandler(ch)
    log_dir = os.environ.get('LOG_DIR')
    if not log_dir:
        return
    # Rotating file handler (5 MB, keep 3 backups)
    try:
        os.makedirs(log_dir, exist_ok=True)
        fh = RotatingFileHandler(os.path.join(log_dir, 'server.log'), maxBytes=5 * 1024 * 1024, backupCount=3)
    except OSError:
        root.warning('Could not attach rotating file handler; continuing with console only')
        return
    fh.setFormatter(fmt)
    fh.addFilter(CorrelationIdFilter())
    root.addHandler(fh)


def log_config(config):
    """Log current configuration (secrets masked)"""
    logging.info("=== Mood Dashboard Configuration ===")
    for key, value in masked(config).items():
        logging.info("%s: %s", key, value)
    logging.info("====================================")
