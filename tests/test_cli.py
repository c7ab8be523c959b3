import pytest
from click.testing import CliRunner

from udp_gate import __main__ as entrypoint
from udp_gate.cli import udpgate
from udp_gate.firewall import PacketFilterError
from udp_gate.rules import SetupError


@pytest.fixture()
def runner():
    return CliRunner()


def test_run_applies_command_line(config, runner, mocker):
    run_mock = mocker.patch.object(entrypoint, 'run')

    result = runner.invoke(udpgate, ['run', '--listen', '3031', '--protect', '27015,27016'])

    assert result.exit_code == 0, result.output
    assert run_mock.called
    assert config.guard.protect == '27015,27016'
    assert config.http.port == 3031
    assert config.http.trusted_signature == 'Valve/Steam'


def test_run_fails_on_setup_error(config, runner, mocker):
    mocker.patch.object(entrypoint, 'run', side_effect=SetupError('Failed to create ipset'))

    result = runner.invoke(udpgate, ['run'])

    assert result.exit_code == 1
    assert 'Startup failed: Failed to create ipset' in result.output


def test_run_rejects_bad_port(config, runner, mocker):
    run_mock = mocker.patch.object(entrypoint, 'run')

    result = runner.invoke(udpgate, ['run', '--listen', '70000'])

    assert result.exit_code == 2
    assert not run_mock.called


@pytest.mark.parametrize(
    'errors, exit_code',
    [([], 0), ([PacketFilterError(['ipset', 'destroy'], 1, 'does not exist')], 1)],
    ids=['clean', 'partial'],
)
def test_cleanup(config, runner, mocker, errors, exit_code):
    cleanup_mock = mocker.patch.object(entrypoint, 'cleanup', return_value=errors)

    result = runner.invoke(udpgate, ['cleanup', '--protect', '27020'])

    assert result.exit_code == exit_code
    assert cleanup_mock.called
    assert config.guard.protect == '27020'


def test_cleanup_without_guard_config(config_manager, runner, mocker):
    mocker.patch.object(entrypoint.uvloop, 'install')
    config_manager.add_config('00-http.yaml', 'http: {port: 3030}\n')

    with config_manager.setup():
        result = runner.invoke(udpgate, ['cleanup'])

    assert result.exit_code == 1
    assert 'Cleanup failed: guard section is missing' in result.output
    assert result.exception is None or isinstance(result.exception, SystemExit)


def test_cleanup_with_invalid_ports(config, runner, mocker):
    mocker.patch.object(entrypoint.uvloop, 'install')

    result = runner.invoke(udpgate, ['cleanup', '--protect', '0'])

    assert result.exit_code == 1
    assert 'Cleanup failed:' in result.output
