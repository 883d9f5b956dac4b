"""
Unit tests for configuration loading, argument handling and exit codes.
"""

import asyncio
import json
import signal
from unittest.mock import AsyncMock, patch

import pytest

import atc_relay
from atc_relay import (
    BrokerConnectionError,
    ConfigurationError,
    ScanError,
    build_arg_parser,
    build_relay_config,
    load_config,
    parse_duration,
)


class TestParseDuration:

    @pytest.mark.parametrize('value, expected', [
        ('5s', 5.0),
        ('500ms', 0.5),
        ('1m30s', 90.0),
        ('2h', 7200.0),
        ('0', 0.0),
        ('2.5', 2.5),
        (10, 10.0),
        (0.25, 0.25),
    ])
    def test_valid(self, value, expected):
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize('value', ['', 'five', '5x', 's5', '-1', -3, True])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


def write_config(tmp_path, data):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps(data), encoding='utf-8')
    return str(path)


class TestLoadConfig:

    def test_valid_config(self, tmp_path):
        path = write_config(tmp_path, {'scan_duration': '10s', 'mqtt': {'host': 'broker.lan', 'port': 1884}})
        assert load_config(path)['mqtt']['port'] == 1884

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match='not found'):
            load_config(str(tmp_path / 'missing.json'))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text('{not json', encoding='utf-8')
        with pytest.raises(ConfigurationError, match='Invalid JSON'):
            load_config(str(path))

    @pytest.mark.parametrize('data, message', [
        ({'mqtt': {'port': 0}}, 'port'),
        ({'mqtt': {'port': '1883'}}, 'port'),
        ({'mqtt': {'client_id': ''}}, 'client_id'),
        ({'mqtt': {'client_id': 'x' * 129}}, 'too long'),
        ({'mqtt': {'auth_type': 'token'}}, 'auth_type'),
        ({'mqtt': {'keepalive': -1}}, 'keepalive'),
        ({'mqtt': {'connect_timeout_sec': 0}}, 'connect_timeout_sec'),
        ({'mqtt': []}, 'mqtt'),
        ({'scan_duration': 'soon'}, 'scan_duration'),
        ({'device': ''}, 'device'),
    ])
    def test_invalid_values(self, tmp_path, data, message):
        with pytest.raises(ConfigurationError, match=message):
            load_config(write_config(tmp_path, data))


class TestBuildRelayConfig:

    def test_defaults(self):
        config = build_relay_config(build_arg_parser().parse_args([]))

        assert config.device_settings == 'devices.ini'
        assert config.scan_duration == 5.0
        assert config.session_timeout == 60.0
        assert config.device == 'default'
        assert config.broker.host == 'localhost'
        assert config.broker.port == 1883
        assert config.broker.client_id == 'atc-sensor-relay'
        assert config.broker.disconnect_grace_ms == 1000

    def test_command_line_overrides_file(self):
        args = build_arg_parser().parse_args([
            '--sd', '30s', '--mqtt-host', 'cli-host', '--device', 'hci1'
        ])
        file_config = {
            'scan_duration': 10,
            'device_settings': 'sensors.ini',
            'mqtt': {'host': 'file-host', 'port': 8883, 'auth_type': 'userpass',
                     'credentials': {'username': 'relay'}},
        }

        config = build_relay_config(args, file_config)

        assert config.scan_duration == 30.0
        assert config.device == 'hci1'
        assert config.device_settings == 'sensors.ini'
        assert config.broker.host == 'cli-host'
        assert config.broker.port == 8883
        assert config.broker.auth_type == 'userpass'

    def test_config_is_immutable(self):
        config = build_relay_config(build_arg_parser().parse_args([]))
        with pytest.raises(AttributeError):
            config.scan_duration = 1

    def test_zero_session_timeout_rejected(self):
        with pytest.raises(ConfigurationError):
            build_relay_config(build_arg_parser().parse_args(['--session-timeout', '0']))

    def test_bad_scan_duration(self):
        with pytest.raises(ConfigurationError):
            build_relay_config(build_arg_parser().parse_args(['--sd', 'later']))


class TestMain:

    def test_missing_settings_file_exits_nonzero(self, tmp_path):
        assert atc_relay.main(['--device-settings', str(tmp_path / 'missing.ini')]) == 1

    def test_bad_settings_exit_before_scanning(self, tmp_path):
        path = tmp_path / 'devices.ini'
        path.write_text('[ATC_1234]\nsensorname=desk\n', encoding='utf-8')

        with patch('atc_relay.run', new=AsyncMock()) as run:
            assert atc_relay.main(['--device-settings', str(path)]) == 1
        run.assert_not_called()

    def test_no_known_sensors_exits_cleanly(self, tmp_path):
        path = tmp_path / 'devices.ini'
        path.write_text('[general]\nkey=value\n', encoding='utf-8')

        with patch('atc_relay.run', new=AsyncMock()) as run:
            assert atc_relay.main(['--device-settings', str(path)]) == 0
        run.assert_not_called()

    def test_completed_cycle(self, device_settings):
        with patch('atc_relay.run', new=AsyncMock(return_value={})) as run:
            assert atc_relay.main(['--device-settings', str(device_settings), '--sd', '1s']) == 0

        config, registry, _ = run.call_args.args
        assert config.scan_duration == 1.0
        assert set(registry) == {'a4:c1:38:0c:5b:45', 'atc_8be271'}

    @pytest.mark.parametrize('error', [
        BrokerConnectionError('broker down'),
        ScanError('adapter gone'),
        RuntimeError('unexpected'),
    ])
    def test_fatal_errors_exit_nonzero(self, device_settings, error):
        with patch('atc_relay.run', new=AsyncMock(side_effect=error)):
            assert atc_relay.main(['--device-settings', str(device_settings)]) == 1

    def test_invalid_runtime_config(self, tmp_path, device_settings):
        path = write_config(tmp_path, {'mqtt': {'auth_type': 'kerberos'}})
        assert atc_relay.main(['-c', path, '--device-settings', str(device_settings)]) == 1


class TestSignalHandlers:

    @pytest.mark.asyncio
    async def test_loop_handlers_removed_on_restore(self, logger):
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        restore = atc_relay._setup_signal_handlers(stop_event, logger)
        restore()

        assert loop.remove_signal_handler(signal.SIGINT) is False
        assert loop.remove_signal_handler(signal.SIGTERM) is False

    @pytest.mark.asyncio
    async def test_fallback_handlers_restored(self, logger):
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()
        original = {signum: signal.getsignal(signum) for signum in (signal.SIGINT, signal.SIGTERM)}

        with patch.object(loop, 'add_signal_handler', side_effect=NotImplementedError):
            restore = atc_relay._setup_signal_handlers(stop_event, logger)
        try:
            handler = signal.getsignal(signal.SIGTERM)
            assert handler is not original[signal.SIGTERM]

            handler(signal.SIGTERM, None)
            await asyncio.sleep(0)
            assert stop_event.is_set()
        finally:
            restore()

        assert signal.getsignal(signal.SIGINT) == original[signal.SIGINT]
        assert signal.getsignal(signal.SIGTERM) == original[signal.SIGTERM]

    @pytest.mark.asyncio
    async def test_run_restores_handlers_after_failed_cycle(self, relay_config, registry, logger):
        loop = asyncio.get_running_loop()

        with patch('atc_relay.BleakTransport'), patch('atc_relay.MQTTPublisher'), \
                patch('atc_relay.SensorRelay') as relay_cls:
            relay_cls.return_value.run_cycle = AsyncMock(side_effect=ScanError('adapter gone'))
            with pytest.raises(ScanError):
                await atc_relay.run(relay_config, registry, logger)

        stop_event = relay_cls.return_value.run_cycle.call_args.args[0]
        assert not stop_event.is_set()
        assert loop.remove_signal_handler(signal.SIGTERM) is False
