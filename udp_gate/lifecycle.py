import asyncio
import enum
import logging
import signal
import time
import typing

from .allowlist import Allowlist
from .config import FirewallModel
from .config import GuardModel
from .firewall import IPSet
from .firewall import IPTables
from .firewall import PacketFilterError
from .rules import RuleSet
from .rules import SetupError
from .sweeper import ExpirySweeper

logger = logging.getLogger('udpgate.lifecycle')


class State(enum.Enum):
    UNINITIALIZED = 'uninitialized'
    RUNNING = 'running'
    DRAINING = 'draining'
    TERMINATED = 'terminated'


class Service(typing.Protocol):
    async def start(self):
        ...

    async def stop(self):
        ...


class Lifecycle:
    """Brackets the process: packet filter setup, serving, draining and teardown

    Teardown order is fixed: jump rule, chain, then ipset. The chain references
    the set, the parent chain references the chain.
    """

    def __init__(
        self,
        guard: GuardModel,
        ipset: IPSet,
        iptables: IPTables,
        clock: typing.Callable[[], float] = time.monotonic,
    ):
        self.guard = guard
        self.ipset = ipset
        self.iptables = iptables
        self.rules = RuleSet(guard)
        self.allowlist = Allowlist(ipset, ttl=guard.ttl, clock=clock)
        self.sweeper = ExpirySweeper(self.allowlist, interval=guard.sweep_interval)
        self.state = State.UNINITIALIZED
        self.set_created = False
        self._services: typing.List[Service] = []
        self._stop_requested = asyncio.Event()

    @classmethod
    def from_settings(cls, guard: GuardModel, firewall: FirewallModel):
        ipset = IPSet(guard.set_name, executable=firewall.ipset, timeout=firewall.command_timeout)
        iptables = IPTables(
            executable=firewall.iptables,
            wait=firewall.xtables_wait,
            timeout=firewall.command_timeout,
        )
        return cls(guard, ipset=ipset, iptables=iptables)

    async def _setup_packet_filter(self):
        try:
            await self.ipset.create(maxelem=self.guard.set_maxelem)
        except PacketFilterError as exc:
            raise SetupError(f'Failed to create ipset {self.ipset.name}: {exc}') from exc
        self.set_created = True
        logger.info('ipset %s created', self.ipset.name)

        await self.rules.install(self.iptables)

    async def start(self, *services: Service):
        """Install packet filter, start the sweeper, then ``services``

        On any failure everything applied so far is rolled back and the error
        is re-raised: the process must not serve with a partial setup.
        """
        if self.state is not State.UNINITIALIZED:
            raise RuntimeError(f'Can not start from state {self.state.value}')

        try:
            await self._setup_packet_filter()
            self.sweeper.start()
            self.state = State.RUNNING

            for service in services:
                await service.start()
                self._services.append(service)
        except Exception:
            logger.error(
                'Startup failed, rolling back. '
                'If a previous run left its rules behind, run `udpgate cleanup` first'
            )
            await self.drain()
            await self.terminate()
            raise

        logger.info('Running. Allow-list ttl=%ss, sweep every %ss', self.guard.ttl, self.guard.sweep_interval)

    async def drain(self):
        """Stop services and sweeper, wait for a mutation in progress"""
        if self.state is State.TERMINATED:
            return

        self.state = State.DRAINING
        logger.info('Draining ...')

        for service in reversed(self._services):
            try:
                await service.stop()
            except Exception:
                logger.exception('Failed to stop %r', service)
        self._services.clear()

        await self.sweeper.stop()
        await self.allowlist.close()
        logger.info('Draining ... done!')

    async def terminate(self, force: bool = False) -> typing.List[PacketFilterError]:
        """Remove everything from the packet filter, best effort

        :param force: also try steps for parts this process did not create
            (cleanup after a crashed run)
        :return: errors of failed steps, already logged
        """
        if self.state not in (State.DRAINING, State.UNINITIALIZED):
            raise RuntimeError(f'Can not terminate from state {self.state.value}')

        errors = await self.rules.uninstall(self.iptables, force=force)

        if self.set_created or force:
            for title, func in (('flush ipset', self.ipset.flush), ('destroy ipset', self.ipset.destroy)):
                try:
                    await func()
                except PacketFilterError as exc:
                    logger.error('Teardown step "%s" failed: %s', title, exc)
                    errors.append(exc)
            self.set_created = False

        self.state = State.TERMINATED
        if errors:
            logger.warning('Teardown finished with %s failed steps, check the packet filter', len(errors))
        else:
            logger.info('Packet filter cleaned up')
        return errors

    def request_stop(self, sig: typing.Optional[signal.Signals] = None):
        if sig is not None:
            logger.info('Received signal: %s', sig.name)
        self._stop_requested.set()

    async def serve(self, *services: Service):
        """Run until SIGINT/SIGTERM, then drain and tear down"""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop, sig)

        try:
            await self.start(*services)
            await self._stop_requested.wait()
            await self.drain()
            await self.terminate()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
