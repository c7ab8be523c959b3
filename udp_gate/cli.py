import contextlib
import sys

import click
import pydantic

from . import config


def _override(listen, protect):
    overrides = {}
    if listen is not None:
        overrides['http'] = {'port': listen}
    if protect is not None:
        overrides['guard'] = {'protect': protect}
    if overrides:
        config.settings.override(overrides)


@contextlib.contextmanager
def _exit_on_setup_errors(action: str):
    from .rules import SetupError

    try:
        yield
    except (SetupError, config.ConfigurationError, pydantic.ValidationError) as exc:
        click.echo(f'{action} failed: {exc}', err=True)
        sys.exit(1)


@click.group()
def udpgate():
    """Allow-list UDP clients verified over HTTP"""


@udpgate.command()
@click.option('-l', '--listen', type=click.IntRange(1, 65535), help='Port to listen on for trust signals')
@click.option('-p', '--protect', help='UDP port(s) to protect, iptables multiport syntax')
def run(listen, protect):
    """Run UDPGate process"""
    from .__main__ import run

    _override(listen, protect)
    with _exit_on_setup_errors('Startup'):
        run()


@udpgate.command()
@click.option('-p', '--protect', help='UDP port(s) the crashed run protected')
def cleanup(protect):
    """Remove rules and ipset left behind by a crashed run"""
    from .__main__ import cleanup

    _override(None, protect)
    with _exit_on_setup_errors('Cleanup'):
        errors = cleanup()

    if errors:
        click.echo(f'{len(errors)} cleanup steps failed, see log', err=True)
        sys.exit(1)


if __name__ == '__main__':
    udpgate()
