from __future__ import annotations

import asyncio
import inspect
import json
import logging
import multiprocessing
import os
import pathlib
from unittest import mock
from unittest.mock import AsyncMock

import click.testing
import pytest
from websockets.asyncio.client import connect

from signalrelay.config import RelayServingConfig
from signalrelay.registry import SessionRegistry
from signalrelay.run import cli
from signalrelay.run import periodic_client_logger
from signalrelay.run import periodic_reaper
from signalrelay.run import serve
from signalrelay.server import RelayServer
from testing.sessions import MockSession
from testing.utils import open_port


async def cancel(task: asyncio.Task[None]) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@pytest.mark.asyncio()
async def test_periodic_reaper(caplog) -> None:
    caplog.set_level(logging.INFO)

    registry = SessionRegistry()
    closed = MockSession()
    closed.open = False
    registry.register('alice', MockSession(), origin_address='10.0.0.1')
    registry.register('bob', closed, origin_address='10.0.0.2')

    task = periodic_reaper(registry, 0.001)
    await asyncio.sleep(0.01)
    await cancel(task)

    assert registry.lookup('alice') is not None
    assert registry.lookup('bob') is None
    assert any(
        'Reaped 1 client(s)' in record.message and 'bob' in record.message
        for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_periodic_reaper_survives_errors(caplog) -> None:
    caplog.set_level(logging.ERROR)

    registry = SessionRegistry()
    with mock.patch.object(
        registry,
        'reap_closed',
        side_effect=RuntimeError('Oh no!'),
    ) as mock_reap:
        task = periodic_reaper(registry, 0.001)
        await asyncio.sleep(0.01)
        assert not task.done()
        await cancel(task)

    assert mock_reap.call_count > 1
    assert any(
        'Failed to reap' in record.message for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_periodic_client_logger(caplog) -> None:
    caplog.set_level(logging.INFO)

    server = RelayServer()
    server.registry.register(
        'alice',
        MockSession(),
        origin_address='10.0.0.1',
    )

    task = periodic_client_logger(server, 0.001)
    await asyncio.sleep(0.01)
    await cancel(task)

    assert any(
        'Connected clients: 0 (registered: 1)' in record.message
        and record.levelname == 'INFO'
        for record in caplog.records
    )
    assert any(
        'alice' in record.message and record.levelname == 'INFO'
        for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_periodic_client_logger_limit(caplog) -> None:
    caplog.set_level(logging.INFO)

    server = RelayServer()
    for identifier in ('alice', 'bob'):
        server.registry.register(
            identifier,
            MockSession(),
            origin_address='10.0.0.1',
        )

    task = periodic_client_logger(server, 0.001, limit=2)
    await asyncio.sleep(0.01)
    await cancel(task)

    assert any(
        'Connected clients: 0 (registered: 2)' in record.message
        for record in caplog.records
    )
    assert not any('alice' in record.message for record in caplog.records)


def test_periodic_client_logger_default_limit() -> None:
    parameters = inspect.signature(periodic_client_logger).parameters
    default = RelayServingConfig().logging.current_client_limit
    assert parameters['limit'].default == default


def test_invoke() -> None:
    runner = click.testing.CliRunner()
    with mock.patch('signalrelay.run.serve', AsyncMock()) as mock_serve:
        runner.invoke(cli)
        mock_serve.assert_awaited_once()


def test_invoke_and_override_defaults(tmp_path: pathlib.Path) -> None:
    tmp_dir = os.path.join(tmp_path, 'log-dir')
    assert not os.path.isdir(tmp_dir)

    async def _mock_serve(config: RelayServingConfig) -> None:
        assert config.host == 'test-host'
        assert config.port == 1234
        assert config.logging.log_dir == str(tmp_dir)
        assert config.logging.default_level == logging.WARNING

    options: list[str] = []
    options += ['--host', 'test-host']
    options += ['--port', '1234']
    options += ['--log-dir', str(tmp_dir)]
    options += ['--log-level', 'WARNING']

    runner = click.testing.CliRunner()
    with mock.patch(
        'signalrelay.run.serve',
        AsyncMock(side_effect=_mock_serve),
    ) as mock_serve:
        result = runner.invoke(cli, options)
        mock_serve.assert_awaited_once()

    assert result.exit_code == 0
    assert os.path.isdir(tmp_dir)


def test_invoke_port_from_environment() -> None:
    async def _mock_serve(config: RelayServingConfig) -> None:
        assert config.port == 4321

    runner = click.testing.CliRunner()
    with mock.patch(
        'signalrelay.run.serve',
        AsyncMock(side_effect=_mock_serve),
    ) as mock_serve:
        result = runner.invoke(cli, env={'PORT': '4321'})
        mock_serve.assert_awaited_once()

    assert result.exit_code == 0


def test_invoke_with_config_file(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'relay.toml'
    with open(filepath, 'w') as f:
        f.write('port = 5678\npath = "/signal"\n')

    async def _mock_serve(config: RelayServingConfig) -> None:
        assert config.port == 5678
        assert config.path == '/signal'

    runner = click.testing.CliRunner()
    with mock.patch(
        'signalrelay.run.serve',
        AsyncMock(side_effect=_mock_serve),
    ) as mock_serve:
        result = runner.invoke(cli, ['--config', str(filepath)])
        mock_serve.assert_awaited_once()

    assert result.exit_code == 0


def _serve(config: RelayServingConfig) -> None:
    asyncio.run(serve(config))


@pytest.mark.timeout(10)
@pytest.mark.asyncio()
async def test_serve_in_subprocess() -> None:
    config = RelayServingConfig(host='127.0.0.1', port=open_port())
    address = f'ws://{config.host}:{config.port}{config.path}'

    process = multiprocessing.Process(target=_serve, args=(config,))
    process.start()

    try:
        while True:
            try:
                websocket = await connect(address)
            except OSError:  # pragma: no cover
                await asyncio.sleep(0.01)
            else:
                # Coverage doesn't detect the singular break but it does
                # get executed to break from the loop
                break  # pragma: no cover

        await websocket.send(json.dumps({'type': 'CONNECT', 'clientId': 'a'}))
        response = await asyncio.wait_for(websocket.recv(), 1)
        assert json.loads(response) == {'type': 'CONNECTED', 'clientId': 'a'}

        await websocket.close()
    finally:
        process.terminate()
        process.join()

    assert process.exitcode == 0
