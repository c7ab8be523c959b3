import logging

import pytest

from fixtures.config import config  # noqa: F401
from fixtures.config import config_manager  # noqa: F401
from fixtures.config import conf_d_guard  # noqa: F401
from fixtures.config import conf_d_http  # noqa: F401
from fixtures.config import protect  # noqa: F401
from fixtures.packet_filter import clock  # noqa: F401
from fixtures.packet_filter import ipset  # noqa: F401
from fixtures.packet_filter import iptables  # noqa: F401
from fixtures.packet_filter import journal  # noqa: F401
from udp_gate.config import GuardModel


@pytest.fixture()
def guard():
    return GuardModel(protect='27015')


@pytest.fixture(autouse=True)
def _check_no_errors(request, caplog):
    yield
    if request.node.get_closest_marker('allow_error_logs'):
        return

    for when in ('setup', 'call'):
        messages = [x.message for x in caplog.get_records(when) if x.levelno >= logging.ERROR]
        if messages:
            pytest.fail(f'error messages encountered during testing: {messages!r}')
