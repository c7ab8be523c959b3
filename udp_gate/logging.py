import logging.config
import logging.handlers
import os
import sys

LOG_FORMAT = '%(asctime)s [%(levelname)s] [%(name)s] %(message)s'
STREAMS = {'/dev/stderr': 'stderr', '/dev/stdout': 'stdout'}


class BetterRotatingFileHandler(logging.handlers.RotatingFileHandler):
    """Rotating file handler creating missing log directories"""

    def _open(self):
        os.makedirs(os.path.dirname(self.baseFilename), exist_ok=True)
        return super()._open()


def handler_opts(target: str, level) -> dict:
    """dictConfig handler writing records of ``level`` and above to ``target``

    ``target`` is ``/dev/null`` (drop), ``/dev/stderr``, ``/dev/stdout`` or a
    file path, rotated at 1MiB.
    """
    target = target.rstrip('/')
    if target == '/dev/null':
        return {'class': 'logging.NullHandler', 'level': level}

    opts = {'level': level, 'formatter': 'verbose'}
    if target in STREAMS:
        opts.update({'class': 'logging.StreamHandler', 'stream': getattr(sys, STREAMS[target])})
    elif target.startswith('/dev/'):
        raise ValueError(f'Unsupported log device {target}')
    else:
        opts.update(
            {
                'class': f'{BetterRotatingFileHandler.__module__}.{BetterRotatingFileHandler.__qualname__}',
                'filename': target,
                'maxBytes': 1024 * 1024,
                'backupCount': 3,
            }
        )
    return opts


def setup_logging(loglevel=logging.INFO, error_filename: str = None):
    """Console gets ``loglevel`` and above, ``error_filename`` only errors"""
    logging.config.dictConfig(
        {
            'version': 1,
            'disable_existing_loggers': False,
            'formatters': {'verbose': {'format': LOG_FORMAT}},
            'handlers': {
                'console': handler_opts('/dev/stderr', loglevel),
                'errors': handler_opts(error_filename or '/dev/null', logging.ERROR),
            },
            'root': {'handlers': ['console', 'errors'], 'level': 'DEBUG'},
            'loggers': {
                'PidFile': {'level': 'CRITICAL'},
                # a line per trust signal, admissions are logged by udpgate.allowlist
                'aiohttp.access': {'level': 'WARNING'},
                'asyncio': {'level': 'WARNING'},
            },
        }
    )
