import logging
import pathlib
import typing

import sentry_sdk
import yaml
from cached_property import cached_property
from pydantic import AnyHttpUrl
from pydantic import BaseModel
from pydantic import BaseSettings
from pydantic import Extra
from pydantic import confloat
from pydantic import conint
from pydantic import constr
from pydantic import validator
from sentry_sdk.integrations.logging import LoggingIntegration

from . import __version__
from .logging import setup_logging

__all__ = (
    'RateLimitModel',
    'GuardModel',
    'HTTPModel',
    'FirewallModel',
    'Settings',
    'ConfigurationError',
    'parse_multiport',
    'settings',
)

logger = logging.getLogger('udpgate.config')

#: iptables multiport accepts up to 15 ports, a range counts as two
MULTIPORT_MAX_PORTS = 15

HASHLIMIT_RATE_REGEX = r'^[1-9][0-9]*/(sec|second|min|minute|hour|day)$'

#: amplification-prone services: NTP, DNS, SNMP, WS-Discovery, chargen
DEFAULT_REFLECTION_PORTS = (123, 53, 161, 3702, 19)


class ConfigurationError(Exception):
    pass


def _parse_port(token: str) -> int:
    try:
        port = int(token)
    except ValueError:
        raise ValueError(f'not a port number: {token!r}')

    if not 1 <= port <= 65535:
        raise ValueError(f'port out of range: {port}')

    return port


def parse_multiport(value: typing.Union[str, int, typing.Sequence]) -> str:
    """Normalize protected ports into iptables multiport syntax

    Accepts ``27015``, ``"27015,27016"``, ``"27015:27020"`` or a list of those.
    """
    if isinstance(value, int):
        value = str(value)
    if isinstance(value, str):
        tokens = value.split(',')
    else:
        tokens = [str(item) for item in value]

    normalized = []
    weight = 0
    for token in tokens:
        token = token.strip()
        if not token:
            raise ValueError('empty port entry')

        if ':' in token:
            start, _, end = token.partition(':')
            first, last = _parse_port(start), _parse_port(end)
            if first > last:
                raise ValueError(f'port range is reversed: {token}')
            normalized.append(f'{first}:{last}')
            weight += 2
        else:
            normalized.append(str(_parse_port(token)))
            weight += 1

    if not normalized:
        raise ValueError('at least one port is required')

    if weight > MULTIPORT_MAX_PORTS:
        raise ValueError(f'too many ports for multiport match: {weight} > {MULTIPORT_MAX_PORTS}')

    return ','.join(normalized)


class RateLimitModel(BaseModel):
    rate: constr(regex=HASHLIMIT_RATE_REGEX)
    burst: conint(ge=1) = 10

    class Config:
        extra = Extra.forbid


class GuardModel(BaseModel):
    protect: str  #: UDP port(s) to guard, multiport syntax
    ttl: confloat(gt=0) = 300
    sweep_interval: confloat(gt=0) = 60
    chain: constr(regex=r'^[A-Za-z0-9_-]{1,28}$') = 'udpgate'
    parent_chain: constr(regex=r'^[A-Za-z0-9_-]{1,28}$') = 'INPUT'
    hashlimit_name: constr(regex=r'^[A-Za-z0-9_-]{1,9}$') = 'udpgate'
    set_name: constr(regex=r'^[A-Za-z0-9_.-]{1,31}$') = 'udpgate-allowlist'
    set_maxelem: conint(gt=0) = 65536
    reflection_ports: typing.List[conint(ge=1, le=65535)] = list(DEFAULT_REFLECTION_PORTS)
    members_limit: typing.Optional[RateLimitModel] = RateLimitModel(rate='150/sec', burst=10)
    strangers_limit: RateLimitModel = RateLimitModel(rate='5/sec', burst=10)

    class Config:
        extra = Extra.forbid
        allow_mutation = False

    @validator('protect', pre=True)
    def _normalize_protect(cls, v):
        return parse_multiport(v)

    @validator('sweep_interval', always=True)
    def _sweep_shorter_than_ttl(cls, v, values):
        ttl = values.get('ttl')
        if ttl is not None and v >= ttl:
            raise ValueError(f'sweep_interval ({v}) must be shorter than ttl ({ttl})')
        return v

    @validator('reflection_ports')
    def _check_reflection_ports(cls, v):
        if len(v) > MULTIPORT_MAX_PORTS:
            raise ValueError(f'too many reflection ports: {len(v)} > {MULTIPORT_MAX_PORTS}')
        return v


class HTTPModel(BaseModel):
    host: str = '0.0.0.0'
    port: conint(ge=1, le=65535) = 3030
    trusted_signature: constr(min_length=1) = 'GMod'  #: substring expected in User-Agent
    request_timeout: confloat(gt=0) = 10
    shutdown_timeout: confloat(gt=0) = 10

    class Config:
        extra = Extra.forbid


class FirewallModel(BaseModel):
    iptables: str = 'iptables'
    ipset: str = 'ipset'
    xtables_wait: conint(ge=0) = 5  #: seconds to wait for the xtables lock
    command_timeout: confloat(gt=0) = 10

    class Config:
        extra = Extra.forbid


class Settings(BaseSettings):
    sentry_dsn: typing.Optional[AnyHttpUrl] = None
    confdir_0: pathlib.Path = '/etc/udpgate/conf.d/'
    confdir_1: pathlib.Path = './conf.d/'
    error_log: pathlib.Path = '/dev/null'
    loglevel: str = 'INFO'
    piddir: typing.Optional[pathlib.Path] = None

    class Config:
        env_file = '.env'
        env_prefix = 'UDPGATE_'
        keep_untouched = (cached_property,)

    @cached_property
    def merged_config_data(self):
        return load_configs(iter_config_files(self.confdir_0, self.confdir_1))

    @validator('loglevel')
    def _check_loglevel(cls, v):
        from logging import _checkLevel  # noqa

        _checkLevel(v)
        return v

    @cached_property
    def guard(self) -> GuardModel:
        guard = self.merged_config_data.get('guard')
        if not guard:
            raise ConfigurationError('guard section is missing, at least guard.protect must be set')
        return GuardModel.parse_obj(guard)

    @cached_property
    def http(self) -> HTTPModel:
        return HTTPModel.parse_obj(self.merged_config_data.get('http') or {})

    @cached_property
    def firewall(self) -> FirewallModel:
        return FirewallModel.parse_obj(self.merged_config_data.get('firewall') or {})

    def override(self, data: dict):
        """Merge ``data`` over the file configuration (command line has the last word)"""
        merged = merge_dicts(self.merged_config_data, data)
        self.__dict__['merged_config_data'] = merged
        for name in ('guard', 'http', 'firewall'):
            self.__dict__.pop(name, None)


def merge_dicts(base: dict, other: dict) -> dict:
    result = dict(base)
    for key, value in other.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            value = merge_dicts(result[key], value)
        result[key] = value
    return result


def iter_config_files(*confdirs):
    for confdir in confdirs:
        if not confdir.exists():
            logger.info('Confdir not found: %s', confdir.absolute().as_posix())
            continue

        if not confdir.is_dir():
            logger.warning('Confdir expected to be a directory, not a file: %s', confdir.absolute().as_posix())
            continue

        for file in sorted(confdir.iterdir(), key=lambda f: f.name):
            if file.is_file() and file.name.endswith('.yaml'):
                logger.info('Found config: %s', file.as_posix())
                yield file
            else:
                logger.debug('Found non-config file, ignore: %s', file.as_posix())


def load_configs(paths: typing.Iterable[pathlib.Path]):
    whole_config = {}

    for path in paths:
        with path.open() as fp:
            data = yaml.full_load(fp)

        if data is None:
            logger.debug('Empty config: %s', path.as_posix())
            continue

        if not isinstance(data, dict):
            raise ConfigurationError(f'Config must be a mapping: {path.as_posix()}')

        whole_config = merge_dicts(whole_config, data)

    return whole_config


def setup(settings_: Settings = None, reread: bool = False):
    global settings
    if settings_ is None or reread:
        logger.info('Re-read settings')
        settings_ = Settings()

    settings = settings_

    if settings.sentry_dsn:
        sentry_logging = LoggingIntegration(
            level=logging.DEBUG,  # Capture info and above as breadcrumbs
            event_level=logging.ERROR,  # Send errors as events
        )
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            integrations=[sentry_logging],
            release=__version__,
        )

    setup_logging(loglevel=settings.loglevel, error_filename=settings.error_log.as_posix())

    if settings.sentry_dsn:
        logger.debug('Sentry enabled')
    else:
        logger.debug('Sentry disabled')

    return settings


settings = Settings()

setup(settings)


def __getattr__(name):
    if name == 'guard':
        return settings.guard
    elif name == 'http':
        return settings.http
    elif name == 'firewall':
        return settings.firewall
    else:
        raise AttributeError(name)
