import asyncio
import logging
import typing

import backoff

from .allowlist import Allowlist
from .firewall import IPAddress
from .firewall import PacketFilterError

logger = logging.getLogger('udpgate.sweeper')


class SweepReport(typing.NamedTuple):
    checked: int
    evicted: typing.List[IPAddress]
    failed: typing.List[typing.Tuple[IPAddress, PacketFilterError]]


class ExpirySweeper:
    def __init__(self, allowlist: Allowlist, interval: float):
        self.allowlist = allowlist
        self.interval = interval
        self._stopping = asyncio.Event()
        self._task: typing.Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> SweepReport:
        """Evict every entry that outlived the TTL

        A failed eviction does not stop the others, the entry stays in both
        the store and the set and is retried next tick.
        """
        allowlist = self.allowlist
        snapshot = await allowlist.snapshot()
        now = allowlist.clock()
        candidates = [address for address, last_seen in snapshot if allowlist.is_stale(last_seen, now)]

        evicted = []
        failed = []
        for address in candidates:
            try:
                # entry could be refreshed since the snapshot
                if await allowlist.evict_if_stale(address):
                    evicted.append(address)
            except PacketFilterError as exc:
                logger.error('Eviction of %s failed: %s', address, exc)
                failed.append((address, exc))

        if evicted:
            logger.info('Evicted %s stale entries (%s left)', len(evicted), len(allowlist))

        return SweepReport(checked=len(snapshot), evicted=evicted, failed=failed)

    async def _loop(self):
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self.tick()

    async def run(self):
        retry_any_error = backoff.on_exception(
            backoff.constant,
            Exception,
            interval=min(self.interval, 1),
            logger=logger,
            backoff_log_level=logging.ERROR,
            giveup=lambda e: isinstance(e, asyncio.CancelledError),
            giveup_log_level=logging.DEBUG,
        )
        await retry_any_error(self._loop)()

    def start(self) -> asyncio.Task:
        assert self._task is None, 'sweeper already started'
        self._task = asyncio.create_task(self.run(), name='expiry-sweeper')
        return self._task

    async def stop(self):
        """Stop after the tick in progress, if any"""
        self._stopping.set()
        if self._task is not None:
            await self._task
