import asyncio
import logging
from argparse import ArgumentTypeError
from typing import Iterator

import pytest
from fixtures.dhcp_servers import ack, offer
from fixtures.dhcp_servers.mock import MockDHCPServerFixture

from pydhcpc import cli, hooks
from pydhcpc.client import ClientConfig
from pydhcpc.enums import dhcp
from pydhcpc.exceptions import TransportError
from pydhcpc.fsm import Trigger
from pydhcpc.iface_status import InterfaceNotFound
from pydhcpc.leases import (
    JSONFileLeaseStore,
    JSONStdoutLeaseStore,
    Lease,
    NullLeaseStore,
)


@pytest.fixture(autouse=True)
def restore_log_level() -> Iterator[None]:
    '''The cli sets the level of the pydhcpc logger, reset it after.'''
    logger = logging.getLogger('pydhcpc')
    level = logger.level
    yield
    logger.setLevel(level)


def parse(*argv: str):
    psr = cli.get_psr()
    return psr, psr.parse_args(argv)


def test_defaults():
    psr, args = parse('eth0')
    cfg = cli.get_config(psr, args)
    assert cfg.interface == 'eth0'
    assert isinstance(cfg.lease_store, JSONFileLeaseStore)
    assert [i.name for i in cfg.hooks] == [
        'configure_ip',
        'add_default_gw',
        'remove_default_gw',
        'remove_ip',
        'configure_dns',
    ]
    assert cfg.release
    assert cfg.handle_signals
    assert not cfg.write_pidfile
    assert cfg.client_id is None
    assert cfg.vendor_id == 'pydhcpc'
    assert cfg.retry.base_timeout == 4
    assert cfg.retry.max_timeout == 64
    assert cfg.retry.max_attempts == 3
    assert cfg.retry.jitter == 1
    assert args.exit_on_timeout is None


def test_options():
    psr, args = parse(
        'wlan0',
        '--lease-store',
        'pydhcpc.leases.JSONStdoutLeaseStore',
        '--hook',
        'pydhcpc.hooks.configure_dns',
        '-R',
        '-p',
        '-x',
        '10',
        '--client-id',
        'my-client',
        '--vendor-id',
        'acme',
        '--host-name',
        'toaster',
    )
    cfg = cli.get_config(psr, args)
    assert isinstance(cfg.lease_store, JSONStdoutLeaseStore)
    assert list(cfg.hooks) == [hooks.configure_dns]
    assert not cfg.release
    assert cfg.write_pidfile
    assert cfg.client_id == b'my-client'
    assert cfg.vendor_id == 'acme'
    assert cfg.host_name == 'toaster'
    assert args.exit_on_timeout == 10.0


def test_disable_hooks():
    psr, args = parse('eth0', '--disable-hooks', '--hook', 'whatever')
    assert cli.get_config(psr, args).hooks == []


@pytest.mark.parametrize(
    'argv',
    (
        ('eth0', '--lease-store', 'pydhcpc.leases.Lease'),
        ('eth0', '--lease-store', 'not.a.module.Store'),
        ('eth0', '--lease-store', 'nodots'),
        ('eth0', '--hook', 'pydhcpc.hooks.run_hooks'),
        ('eth0', '--hook', 'pydhcpc.nothing_here'),
    ),
)
def test_invalid_dotted_names(argv: tuple[str, ...], capsys):
    psr, args = parse(*argv)
    with pytest.raises(SystemExit) as exc_info:
        cli.get_config(psr, args)
    assert exc_info.value.code == 2
    assert 'must point to' in capsys.readouterr().err


def test_retry_policy():
    _, args = parse(
        'eth0',
        '--base-timeout',
        '0.4',
        '--max-timeout',
        '2',
        '--max-attempts',
        '5',
    )
    policy = cli.get_retry_policy(args)
    assert policy.base_timeout == 0.4
    assert policy.max_timeout == 2
    assert policy.max_attempts == 5
    # small timeouts get a small jitter
    assert policy.jitter == pytest.approx(0.1)


def test_max_timeout_below_base_timeout():
    _, args = parse('eth0', '--base-timeout', '10', '--max-timeout', '5')
    policy = cli.get_retry_policy(args)
    assert policy.max_timeout == 10


@pytest.mark.parametrize(
    'argv',
    (
        ('eth0', '--base-timeout', '0'),
        ('eth0', '--base-timeout', 'soon'),
        ('eth0', '--max-attempts', '0'),
        ('eth0', '--max-attempts', '1.5'),
        ('eth0', '-x', '-1'),
        ('eth0', '--log-level', 'TRACE'),
        (),
    ),
)
def test_invalid_arguments(argv: tuple[str, ...]):
    with pytest.raises(SystemExit):
        parse(*argv)


def test_positive_numbers():
    assert cli.positive_float('1.5') == 1.5
    assert cli.positive_int('3') == 3
    with pytest.raises(ArgumentTypeError):
        cli.positive_float('-1')
    with pytest.raises(ArgumentTypeError):
        cli.positive_int('0')


def test_import_dotted_name():
    assert cli.import_dotted_name('pydhcpc.hooks.configure_ip') is (
        hooks.configure_ip
    )
    assert cli.import_dotted_name('pydhcpc.hooks.nope') is None
    assert cli.import_dotted_name('nope') is None


@pytest.mark.parametrize(
    ('argv', 'level'),
    (
        ((), logging.INFO),
        (('--log-level', 'DEBUG'), logging.DEBUG),
        (('--log-level', 'DEBUG', '-q'), logging.WARNING),
    ),
)
def test_setup_logging(argv: tuple[str, ...], level: int):
    _, args = parse('eth0', *argv)
    cli.setup_logging(args)
    assert logging.getLogger('pydhcpc').level == level


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ('error', 'return_code'),
    (
        (asyncio.TimeoutError(), 1),
        (TransportError('Cannot listen on eth0:68'), 1),
        (None, 0),
    ),
)
async def test_main_return_code(
    monkeypatch: pytest.MonkeyPatch,
    error: Exception | None,
    return_code: int,
    caplog: pytest.LogCaptureFixture,
):
    async def fake_run_client(cfg: ClientConfig, exit_timeout=None):
        assert cfg.interface == 'eth0'
        assert exit_timeout == 3
        if error:
            raise error

    monkeypatch.setattr(cli, 'run_client', fake_run_client)
    assert await cli.main(['eth0', '-x', '3']) == return_code
    if return_code:
        assert caplog.records[-1].levelname == 'ERROR'


@pytest.mark.asyncio
async def test_main_interface_not_found(
    monkeypatch: pytest.MonkeyPatch, capsys
):
    async def fake_run_client(cfg: ClientConfig, exit_timeout=None):
        raise InterfaceNotFound(cfg.interface)

    monkeypatch.setattr(cli, 'run_client', fake_run_client)
    with pytest.raises(SystemExit) as exc_info:
        await cli.main(['eth9'])
    assert exc_info.value.code == 2
    assert 'Interface not found: eth9' in capsys.readouterr().err


class FakeInterfaceStateWatcher:
    '''An interface that's up, until told otherwise.'''

    def __init__(self, interface: str):
        self.interface = interface
        self.up = asyncio.Event()
        self.down = asyncio.Event()
        self.state = 'up'
        self.up.set()

    def go_down(self):
        self.state = 'down'
        self.up.clear()
        self.down.set()

    async def __aenter__(self) -> 'FakeInterfaceStateWatcher':
        return self

    async def __aexit__(self, *_) -> None:
        pass


@pytest.mark.asyncio
async def test_run_client_interface_goes_down(
    mock_dhcp_server: MockDHCPServerFixture,
    client_config: ClientConfig,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
):
    '''The lease is released when the interface goes down.

    The client then waits for the interface to go up again.
    '''
    watchers: list[FakeInterfaceStateWatcher] = []

    def make_watcher(interface: str) -> FakeInterfaceStateWatcher:
        watchers.append(FakeInterfaceStateWatcher(interface))
        return watchers[-1]

    class GoDownWhenBound:
        async def apply(self, lease: Lease, trigger: Trigger) -> None:
            watchers[0].go_down()

        async def revoke(self, lease: Lease, trigger: Trigger) -> None:
            pass

    monkeypatch.setattr(cli, 'InterfaceStateWatcher', make_watcher)
    client_config.applier = GoDownWhenBound()
    client_config.lease_store = NullLeaseStore()
    mock_dhcp_server.responses = [offer(), ack()]
    with pytest.raises(asyncio.TimeoutError):
        await cli.run_client(client_config, exit_timeout=0.5)
    assert len(mock_dhcp_server.sent(dhcp.MessageType.RELEASE)) == 1
    assert 'eth42 went down' in caplog.text


@pytest.mark.asyncio
async def test_run_client_no_lease(
    mock_dhcp_server: MockDHCPServerFixture,
    client_config: ClientConfig,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setattr(
        cli, 'InterfaceStateWatcher', FakeInterfaceStateWatcher
    )
    with pytest.raises(asyncio.TimeoutError):
        await cli.run_client(client_config, exit_timeout=0.5)
    assert mock_dhcp_server.sent(dhcp.MessageType.DISCOVER)


@pytest.mark.asyncio
async def test_run_client_socket_error(
    mock_dhcp_server: MockDHCPServerFixture,
    client_config: ClientConfig,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setattr(
        cli, 'InterfaceStateWatcher', FakeInterfaceStateWatcher
    )
    mock_dhcp_server.send_error = OSError(100, 'Network is down')
    with pytest.raises(TransportError):
        await cli.run_client(client_config)
