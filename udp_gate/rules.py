import logging
import typing

from .config import GuardModel
from .config import RateLimitModel
from .firewall import IPTables
from .firewall import PacketFilterError

logger = logging.getLogger('udpgate.rules')

Rule = typing.List[str]


class SetupError(Exception):
    """Packet filter could not be configured, the host may need manual cleanup"""


def _hashlimit(limit: RateLimitModel, name: str) -> Rule:
    # fmt: off
    return [
        '-m', 'hashlimit',
        '--hashlimit-above', limit.rate,
        '--hashlimit-burst', str(limit.burst),
        '--hashlimit-mode', 'srcip,dstport',
        '--hashlimit-name', name,
    ]
    # fmt: on


class RuleSet:
    """Rules of the dedicated chain and the jump into it

    Only the jump rule touches a shared chain, everything else lives in
    ``guard.chain`` and goes away with it.
    """

    def __init__(self, guard: GuardModel):
        self.guard = guard
        self.chain_created = False
        self.jump_inserted = False

    @property
    def chain(self) -> str:
        return self.guard.chain

    @property
    def installed(self) -> bool:
        return self.chain_created and self.jump_inserted

    def jump_rule(self) -> Rule:
        return ['-p', 'udp', '-m', 'multiport', '--dports', self.guard.protect, '-j', self.chain]

    def chain_rules(self) -> typing.List[Rule]:
        guard = self.guard
        member = ['-m', 'set', '--match-set', guard.set_name, 'src']

        rules = []
        if guard.reflection_ports:
            ports = ','.join(str(port) for port in guard.reflection_ports)
            rules.append(['-p', 'udp', '-m', 'multiport', '--sports', ports, '-j', 'DROP'])

        if guard.members_limit is not None:
            rules.append(member + _hashlimit(guard.members_limit, f'{guard.hashlimit_name}-white') + ['-j', 'DROP'])

        rules += [
            member + ['-j', 'RETURN'],
            _hashlimit(guard.strangers_limit, guard.hashlimit_name) + ['-j', 'DROP'],
            ['-j', 'RETURN'],
        ]
        return rules

    async def install(self, ipt: IPTables):
        """Create the chain, fill it and hook it into the parent chain

        :raise SetupError: any step failed, already applied steps are kept
            and reflected by :attr:`chain_created` / :attr:`jump_inserted`
        """
        try:
            await ipt.new_chain(self.chain)
            self.chain_created = True

            for rule in self.chain_rules():
                await ipt.append(self.chain, rule)

            await ipt.insert(self.guard.parent_chain, self.jump_rule(), 1)
            self.jump_inserted = True
        except PacketFilterError as exc:
            raise SetupError(f'Failed to install rules into chain {self.chain}: {exc}') from exc

        logger.info(
            'Rules installed: udp dports %s -> chain %s (%s rules)',
            self.guard.protect,
            self.chain,
            len(self.chain_rules()),
        )

    async def uninstall(self, ipt: IPTables, force: bool = False) -> typing.List[PacketFilterError]:
        """Remove jump rule, then flush and delete the chain

        Best effort: every step runs even if a previous one failed. Steps for
        parts that were never installed are skipped unless ``force`` is set.

        :return: errors of failed steps
        """
        steps = []
        if self.jump_inserted or force:
            steps.append(('delete jump rule', ipt.delete, (self.guard.parent_chain, self.jump_rule())))
        if self.chain_created or force:
            steps.append(('flush chain', ipt.flush_chain, (self.chain,)))
            steps.append(('delete chain', ipt.delete_chain, (self.chain,)))

        errors = []
        for title, func, args in steps:
            try:
                await func(*args)
            except PacketFilterError as exc:
                logger.error('Teardown step "%s" failed: %s', title, exc)
                errors.append(exc)
            else:
                logger.debug('Teardown step "%s" done', title)

        if not errors:
            self.jump_inserted = False
            self.chain_created = False

        return errors
