import asyncio
import logging
from contextlib import suppress

import uvloop
from pid.decorator import pidfile

from . import config
from . import utils
from .http import HTTPServer
from .http import make_app
from .lifecycle import Lifecycle
from .rules import SetupError

logger = logging.getLogger('udpgate')


@pidfile('udpgate', piddir=config.settings.piddir)
def run():
    uvloop.install()
    with suppress(KeyboardInterrupt, SystemExit):
        asyncio.run(_run())


def cleanup():
    uvloop.install()
    return asyncio.run(_cleanup())


async def _run():
    guard, http = config.guard, config.http

    # fail before touching the packet filter
    if not utils.is_port_available(http.host, http.port):
        raise SetupError(f'Port {http.port} is not available on {http.host}')

    lifecycle = Lifecycle.from_settings(guard, config.firewall)
    server = HTTPServer(make_app(lifecycle.allowlist, http), http)

    logger.info('Protect udp ports %s', guard.protect)
    await lifecycle.serve(server)


async def _cleanup():
    lifecycle = Lifecycle.from_settings(config.guard, config.firewall)
    return await lifecycle.terminate(force=True)


if __name__ == '__main__':
    run()
