"""Thin adapters over the host packet filter

Both talk to the kernel through the ``ipset`` and ``iptables`` binaries, so the
process needs CAP_NET_ADMIN. Every call is a subprocess awaited to completion;
callers that need ordering must serialize calls themselves.
"""
import asyncio
import ipaddress
import logging
import typing

import async_timeout

logger = logging.getLogger('udpgate.firewall')

IPAddress = typing.Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
RuleSpec = typing.Sequence[str]


class PacketFilterError(Exception):
    def __init__(self, command: typing.Sequence[str], returncode: typing.Optional[int], stderr: str):
        super().__init__(command, returncode, stderr)
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr

    def __str__(self):
        cmd = ' '.join(self.command)
        if self.returncode is None:
            return f'`{cmd}` failed: {self.stderr}'
        return f'`{cmd}` exit with code {self.returncode}: {self.stderr}'


async def run_command(command: typing.Sequence[str], timeout: float, ok_codes=(0,)) -> int:
    """Run ``command`` and return its exit code

    :raise PacketFilterError: exit code not in ``ok_codes``, the binary is
        missing or the command did not finish in ``timeout`` seconds
    """
    logger.debug('Run %s', command)

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise PacketFilterError(command, None, str(exc)) from exc

    try:
        async with async_timeout.timeout(timeout):
            _, stderr = await process.communicate()
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise PacketFilterError(command, None, f'no answer in {timeout}s, killed')

    if process.returncode not in ok_codes:
        raise PacketFilterError(command, process.returncode, stderr.decode(errors='replace').strip())

    return process.returncode


class IPSet:
    """``hash:ip`` membership set"""

    def __init__(self, name: str, executable: str = 'ipset', timeout: float = 10):
        self.name = name
        self.executable = executable
        self.timeout = timeout

    def __repr__(self):
        return f'<IPSet {self.name}>'

    async def _run(self, *args, ok_codes=(0,)) -> int:
        return await run_command([self.executable, *args], timeout=self.timeout, ok_codes=ok_codes)

    async def create(self, family: str = 'inet', maxelem: int = 65536, forceadd: bool = True):
        args = ['create', self.name, 'hash:ip', 'family', family, 'maxelem', str(maxelem)]
        if forceadd:
            # a full set evicts a random member instead of refusing new ones
            args.append('forceadd')
        await self._run(*args)

    async def destroy(self):
        await self._run('destroy', self.name)

    async def flush(self):
        await self._run('flush', self.name)

    async def add(self, address: IPAddress):
        await self._run('add', self.name, str(address))

    async def delete(self, address: IPAddress):
        await self._run('del', self.name, str(address))

    async def test(self, address: IPAddress) -> bool:
        # ipset exits with 1 for "not in set"
        returncode = await self._run('test', self.name, str(address), ok_codes=(0, 1))
        return returncode == 0


class IPTables:
    def __init__(self, executable: str = 'iptables', table: str = 'filter', wait: int = 5, timeout: float = 10):
        self.executable = executable
        self.table = table
        self.wait = wait
        self.timeout = timeout

    def __repr__(self):
        return f'<IPTables {self.executable} -t {self.table}>'

    async def _run(self, *args, ok_codes=(0,)) -> int:
        command = [self.executable]
        if self.wait:
            command += ['-w', str(self.wait)]
        command += ['-t', self.table, *args]
        return await run_command(command, timeout=self.timeout, ok_codes=ok_codes)

    async def new_chain(self, chain: str):
        await self._run('-N', chain)

    async def append(self, chain: str, rule: RuleSpec):
        await self._run('-A', chain, *rule)

    async def insert(self, chain: str, rule: RuleSpec, position: int = 1):
        await self._run('-I', chain, str(position), *rule)

    async def delete(self, chain: str, rule: RuleSpec):
        await self._run('-D', chain, *rule)

    async def flush_chain(self, chain: str):
        await self._run('-F', chain)

    async def delete_chain(self, chain: str):
        await self._run('-X', chain)
