"""Trust endpoint

Game clients open ``http://<host>:<port>/`` (or a join link behind it) with
their own User-Agent. A recognized client gets its address allow-listed; a
non-empty path is then answered with a redirect to that path, so
``/steam://connect/1.2.3.4:27015`` verifies and joins in one click.
"""
import asyncio
import logging
import typing

import async_timeout
from aiohttp import hdrs
from aiohttp import web

from .allowlist import AdmissionError
from .allowlist import Allowlist
from .allowlist import normalize_address
from .config import HTTPModel

logger = logging.getLogger('udpgate.http')


def is_trusted(request: web.Request, signature: str) -> bool:
    return signature in request.headers.get(hdrs.USER_AGENT, '')


def timeout_middleware(timeout: float):
    @web.middleware
    async def middleware(request: web.Request, handler):
        try:
            async with async_timeout.timeout(timeout):
                return await handler(request)
        except asyncio.TimeoutError:
            raise web.HTTPRequestTimeout()

    return middleware


#: admissions still running, including those whose request is already gone
ADMISSIONS = web.AppKey('admissions', set)


def make_app(allowlist: Allowlist, settings: HTTPModel) -> web.Application:
    app = web.Application(middlewares=[timeout_middleware(settings.request_timeout)])
    app[ADMISSIONS] = admissions = set()

    def admission_done(task: asyncio.Task):
        admissions.discard(task)
        if task.cancelled():
            return
        # retrieved here too, nobody awaits it once the request timed out
        exc = task.exception()
        if exc is not None:
            logger.debug('Admission finished with error: %s', exc)

    async def handle_signal(request: web.Request) -> web.StreamResponse:
        if request.remote is None:
            raise web.HTTPBadRequest(text='Client address is unknown')

        address = normalize_address(request.remote)
        trusted = is_trusted(request, settings.trusted_signature)

        admission = asyncio.create_task(allowlist.admit(address, trusted))
        admissions.add(admission)
        admission.add_done_callback(admission_done)

        try:
            # admission must not be interrupted halfway by the request timeout
            outcome = await asyncio.shield(admission)
        except AdmissionError as exc:
            return web.Response(status=500, text=f'Something went wrong: {exc}')

        if not outcome.granted:
            raise web.HTTPForbidden()

        key = request.match_info.get('key')
        if key:
            raise web.HTTPTemporaryRedirect(location=key)

        return web.Response(status=200)

    app.router.add_route('*', '/{key:.*}', handle_signal)
    return app


class HTTPServer:
    def __init__(self, app: web.Application, settings: HTTPModel):
        self.app = app
        self.settings = settings
        self._runner: typing.Optional[web.AppRunner] = None

    async def start(self):
        runner = web.AppRunner(self.app, shutdown_timeout=self.settings.shutdown_timeout)
        await runner.setup()

        site = web.TCPSite(runner, host=self.settings.host, port=self.settings.port)
        try:
            await site.start()
        except Exception:
            await runner.cleanup()
            raise

        self._runner = runner
        logger.info('Listen for trust signals on %s:%s', self.settings.host, self.settings.port)

    async def stop(self):
        """Stop listening, in-flight requests are completed first"""
        if self._runner is None:
            return

        logger.info('Stop listening, wait for in-flight requests ...')
        await self._runner.cleanup()
        self._runner = None
        logger.info('Stop listening, wait for in-flight requests ... done!')
