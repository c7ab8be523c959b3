import asyncio
import enum
import ipaddress
import logging
import time
import typing

from .firewall import IPAddress
from .firewall import IPSet
from .firewall import PacketFilterError

logger = logging.getLogger('udpgate.allowlist')

Entry = typing.Tuple[IPAddress, float]


class AdmissionError(Exception):
    pass


class Outcome(enum.Enum):
    REJECTED = 'rejected'
    ADMITTED = 'admitted'
    REFRESHED = 'refreshed'
    READMITTED = 'readmitted'

    @property
    def granted(self) -> bool:
        return self is not Outcome.REJECTED


def normalize_address(address: typing.Union[str, IPAddress]) -> IPAddress:
    """Parse ``address``, IPv4-mapped IPv6 addresses become plain IPv4"""
    if isinstance(address, str):
        address = ipaddress.ip_address(address)

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped

    return address


class AllowlistStore:
    """address -> last seen timestamp

    Not synchronized on its own, only :class:`Allowlist` touches it.
    """

    def __init__(self):
        self._entries: typing.Dict[IPAddress, float] = {}

    def __contains__(self, address):
        return address in self._entries

    def __len__(self):
        return len(self._entries)

    def lookup(self, address: IPAddress) -> typing.Optional[float]:
        return self._entries.get(address)

    def upsert(self, address: IPAddress, timestamp: float):
        self._entries[address] = timestamp

    def remove(self, address: IPAddress):
        self._entries.pop(address, None)

    def snapshot(self) -> typing.List[Entry]:
        return list(self._entries.items())


class Allowlist:
    """Allow-list store and its ipset mirror behind one lock

    Every change is applied to the ipset first and to the store only after the
    ipset call succeeded, so outside the lock an address is in the store if and
    only if it is in the set.
    """

    def __init__(self, ipset: IPSet, ttl: float, clock: typing.Callable[[], float] = time.monotonic):
        self.ipset = ipset
        self.ttl = ttl
        self.clock = clock
        self._store = AllowlistStore()
        self._lock = asyncio.Lock()
        self._closed = False

    def __len__(self):
        return len(self._store)

    @property
    def closed(self) -> bool:
        return self._closed

    async def lookup(self, address: IPAddress) -> typing.Optional[float]:
        async with self._lock:
            return self._store.lookup(address)

    async def snapshot(self) -> typing.List[Entry]:
        async with self._lock:
            return self._store.snapshot()

    def is_stale(self, last_seen: float, now: float) -> bool:
        return now - last_seen > self.ttl

    async def _add(self, address: IPAddress, now: float):
        await self.ipset.add(address)
        self._store.upsert(address, now)

    async def _evict(self, address: IPAddress):
        await self.ipset.delete(address)
        self._store.remove(address)

    async def admit(self, address: IPAddress, trusted: bool) -> Outcome:
        """Handle a trust signal from ``address``

        :raise AdmissionError: ipset mutation failed or the allow-list is
            already closed, the address is not granted in that case
        """
        if not trusted:
            logger.debug('Rejected %s: untrusted', address)
            return Outcome.REJECTED

        async with self._lock:
            if self._closed:
                raise AdmissionError('allow-list is closed')

            now = self.clock()
            last_seen = self._store.lookup(address)

            try:
                if last_seen is None:
                    await self._add(address, now)
                    outcome = Outcome.ADMITTED
                elif not self.is_stale(last_seen, now):
                    self._store.upsert(address, now)
                    outcome = Outcome.REFRESHED
                else:
                    await self._evict(address)
                    await self._add(address, now)
                    outcome = Outcome.READMITTED
            except PacketFilterError as exc:
                logger.warning('Admission of %s failed: %s', address, exc)
                raise AdmissionError(str(exc)) from exc

        if outcome is not Outcome.REFRESHED:
            logger.info('%s %s (%s in allow-list)', outcome.value.capitalize(), address, len(self._store))
        return outcome

    async def evict_if_stale(self, address: IPAddress) -> bool:
        """Evict ``address`` if its entry is still stale at the time the lock is held

        :return: True if evicted
        :raise PacketFilterError: ipset removal failed, entry is kept
        """
        async with self._lock:
            last_seen = self._store.lookup(address)
            if last_seen is None or not self.is_stale(last_seen, self.clock()):
                return False

            await self._evict(address)
            return True

    async def close(self):
        """Refuse further admissions, waits for a mutation in progress"""
        async with self._lock:
            self._closed = True
