import asyncio
import gc
import logging
from ipaddress import IPv4Address

import async_timeout
import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient
from aiohttp.test_utils import TestServer

from udp_gate.allowlist import Allowlist
from udp_gate.config import HTTPModel
from udp_gate.http import ADMISSIONS
from udp_gate.http import HTTPServer
from udp_gate.http import make_app
from udp_gate.utils import is_port_available

LOCALHOST = IPv4Address('127.0.0.1')
GMOD_UA = 'Valve/Steam HTTP Client 1.0 (GMod/13)'


@pytest.fixture()
def allowlist(ipset, clock):
    ipset.exists = True
    return Allowlist(ipset, ttl=300, clock=clock)


@pytest.fixture()
def http_settings():
    return HTTPModel(request_timeout=0.2)


@pytest.fixture()
async def client(allowlist, http_settings):
    async with TestClient(TestServer(make_app(allowlist, http_settings))) as client:
        yield client


async def test_trusted_client_is_admitted(client, ipset):
    resp = await client.get('/', headers={'User-Agent': GMOD_UA})

    assert resp.status == 200
    assert ipset.members == {LOCALHOST}


async def test_repeated_requests_refresh(client, ipset, journal, clock):
    for now in (0, 100, 200):
        clock.now = now
        resp = await client.get('/', headers={'User-Agent': GMOD_UA})
        assert resp.status == 200

    assert journal == [('ipset.add', LOCALHOST)]


@pytest.mark.parametrize('user_agent', ['curl/8.0', 'Mozilla/5.0', 'gmod'])
async def test_untrusted_client_is_forbidden(client, ipset, journal, user_agent):
    resp = await client.post('/connect', headers={'User-Agent': user_agent})

    assert resp.status == 403
    assert ipset.members == set()
    assert journal == []


async def test_redirect_after_admission(client, ipset):
    resp = await client.get('/join-server', headers={'User-Agent': GMOD_UA}, allow_redirects=False)

    assert resp.status == 307
    assert resp.headers['Location'] == 'join-server'
    assert LOCALHOST in ipset.members


async def test_ipset_failure_is_server_error(client, ipset):
    ipset.fail('ipset.add')

    resp = await client.get('/', headers={'User-Agent': GMOD_UA})

    assert resp.status == 500
    assert (await resp.text()).startswith('Something went wrong:')
    assert ipset.members == set()


async def test_custom_signature(allowlist, ipset):
    settings = HTTPModel(trusted_signature='Rust')

    async with TestClient(TestServer(make_app(allowlist, settings))) as client:
        assert (await client.get('/', headers={'User-Agent': GMOD_UA})).status == 403
        assert (await client.get('/', headers={'User-Agent': 'Rust/2024'})).status == 200

    assert ipset.members == {LOCALHOST}


async def test_timed_out_request_completes_admission(client, allowlist, ipset):
    ipset.gate = asyncio.Event()

    resp = await client.get('/', headers={'User-Agent': GMOD_UA})
    assert resp.status == 408

    ipset.gate.set()
    async with async_timeout.timeout(2):
        while await allowlist.lookup(LOCALHOST) is None:
            await asyncio.sleep(0.005)

    assert ipset.members == {LOCALHOST}


async def test_server_start_stop(allowlist, unused_tcp_port):
    settings = HTTPModel(host='127.0.0.1', port=unused_tcp_port)
    server = HTTPServer(make_app(allowlist, settings), settings)

    await server.start()
    assert not is_port_available('127.0.0.1', unused_tcp_port)

    await server.stop()
    await server.stop()
    assert is_port_available('127.0.0.1', unused_tcp_port)


async def test_failed_admission_after_timeout_is_not_an_error(client, ipset, caplog):
    ipset.gate = asyncio.Event()
    ipset.fail('ipset.add')

    resp = await client.get('/', headers={'User-Agent': GMOD_UA})
    assert resp.status == 408

    admissions = client.server.app[ADMISSIONS]
    assert len(admissions) == 1

    ipset.gate.set()
    async with async_timeout.timeout(2):
        while admissions:
            await asyncio.sleep(0.005)

    # unretrieved task exceptions are reported when the task is collected
    gc.collect()

    assert ipset.members == set()
    assert [r.getMessage() for r in caplog.records if r.levelno >= logging.ERROR] == []


async def test_server_start_failure_cleans_up(allowlist, unused_tcp_port, mocker):
    settings = HTTPModel(host='127.0.0.1', port=unused_tcp_port)
    first = HTTPServer(make_app(allowlist, settings), settings)
    second = HTTPServer(make_app(allowlist, settings), settings)
    cleanup_spy = mocker.spy(web.AppRunner, 'cleanup')

    await first.start()
    try:
        with pytest.raises(OSError):
            await second.start()

        assert cleanup_spy.call_count == 1
        await second.stop()
        assert cleanup_spy.call_count == 1
    finally:
        await first.stop()

    assert is_port_available('127.0.0.1', unused_tcp_port)
