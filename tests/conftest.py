"""
Pytest configuration and shared fixtures for the ATC sensor relay tests.
"""

import logging

import pytest

from atc_relay import Advertisement, BrokerConfig, RelayConfig, SensorInfo
from tests.mocks.fake_transport import FakeSession, FakeTransport, sensor_profile

DESK_ADDRESS = 'a4:c1:38:0c:5b:45'
BALCONY_ADDRESS = 'a4:c1:38:8b:e2:71'


@pytest.fixture
def logger():
    return logging.getLogger('ATCRelayTest')


@pytest.fixture
def desk_info():
    return SensorInfo(sensor_name='desk', topic='temperature/room')


@pytest.fixture
def registry(desk_info):
    return {
        DESK_ADDRESS: desk_info,
        'atc_8be271': SensorInfo(sensor_name='balcony', topic='environment/balcony'),
    }


@pytest.fixture
def relay_config():
    return RelayConfig(
        scan_duration=0.01,
        session_timeout=1.0,
        broker=BrokerConfig(connect_timeout=0.5, disconnect_grace_ms=100)
    )


@pytest.fixture
def desk_session():
    services, reads = sensor_profile(temperature_raw=215, humidity_raw=4500)
    return FakeSession(DESK_ADDRESS.upper(), services, reads)


@pytest.fixture
def desk_transport(desk_session):
    advertisement = Advertisement(address=DESK_ADDRESS.upper(), local_name='ATC_0C5B45')
    return FakeTransport(
        advertisements=[advertisement],
        sessions={advertisement: desk_session}
    )


@pytest.fixture
def device_settings(tmp_path):
    path = tmp_path / 'devices.ini'
    path.write_text(
        "; known sensors\n"
        "[A4:C1:38:0C:5B:45]\n"
        "sensorname=Edge of Desk\n"
        "topic=temperature/room\n"
        "\n"
        "[ATC_8BE271]\n"
        "sensorname=balcony\n"
        "topic=environment/balcony\n"
        "\n"
        "[general]\n"
        "comment=not a device\n",
        encoding='utf-8'
    )
    return path
