#!/usr/bin/env python3
"""
ATC Sensor Relay
Discovers known Bluetooth Low Energy (BLE) environmental sensors, reads their
temperature and humidity over GATT and publishes one JSON message per sensor
to an MQTT broker.

A run is a single cycle: scan, poll each matched sensor in turn, publish.
"""

__version__ = "1.0.0"

import argparse
import asyncio
import configparser
import json
import logging
import os
import re
import signal
import ssl
import struct
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

try:
    from bleak import BleakClient, BleakScanner
    from bleak.backends.device import BLEDevice
    from bleak.backends.scanner import AdvertisementData
    from bleak.exc import BleakError
except ImportError:
    print("Error: bleak library not installed. Run: pip install bleak")
    sys.exit(1)

try:
    import paho.mqtt.client as mqtt
except ImportError:
    print("Error: paho-mqtt library not installed. Run: pip install paho-mqtt")
    sys.exit(1)


# ANSI color codes for cross-platform colored output
class Colors:
    """ANSI color codes for terminal output."""
    GREEN = '\033[92m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    RESET = '\033[0m'
    BOLD = '\033[1m'


ICON_SUCCESS = f"{Colors.GREEN}✓{Colors.RESET}"
ICON_ERROR = f"{Colors.RED}✗{Colors.RESET}"
ICON_WARNING = f"{Colors.YELLOW}⚠{Colors.RESET}"
ICON_INFO = f"{Colors.BLUE}ℹ{Colors.RESET}"
ICON_PUBLISH = f"{Colors.CYAN}{Colors.BOLD}⬆{Colors.RESET}"
ICON_RECEIVE = f"{Colors.CYAN}⬇{Colors.RESET}"


# Constants for configuration defaults
DEFAULT_DEVICE = 'default'
DEFAULT_SCAN_DURATION = 5.0
DEFAULT_SETTINGS_FILE = 'devices.ini'
DEFAULT_MQTT_HOST = 'localhost'
DEFAULT_PORT = 1883
DEFAULT_CLIENT_ID = 'atc-sensor-relay'
DEFAULT_KEEPALIVE = 60
DEFAULT_LOG_LEVEL = 'INFO'
AUTH_TYPES = ('none', 'userpass', 'mtls')

# Timeouts
SESSION_TIMEOUT_SEC = 60.0
CONNECTION_TIMEOUT_SEC = 10.0
DISCONNECT_TIMEOUT_SEC = 5.0
DISCONNECT_GRACE_MS = 1000

# GATT identifiers (Bluetooth base UUID form, as reported by bleak)
ENVIRONMENT_SERVICE_UUID = '0000181a-0000-1000-8000-00805f9b34fb'
TEMPERATURE_CHAR_UUID = '00002a1f-0000-1000-8000-00805f9b34fb'
HUMIDITY_CHAR_UUID = '00002a6f-0000-1000-8000-00805f9b34fb'
BATTERY_SERVICE_UUID = '0000180f-0000-1000-8000-00805f9b34fb'
BATTERY_LEVEL_CHAR_UUID = '00002a19-0000-1000-8000-00805f9b34fb'
SERVICES_OF_INTEREST = frozenset({ENVIRONMENT_SERVICE_UUID, BATTERY_SERVICE_UUID})

# Device identifiers, matched after normalization
MAC_ADDRESS_RE = re.compile(r'(?:[0-9a-f]{2}:){5}[0-9a-f]{2}')
ATC_NAME_RE = re.compile(r'atc_[0-9a-z]+')

# Validation limits
MAX_CLIENT_ID_LENGTH = 128

_DURATION_RE = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h)')
_DURATION_UNITS = {'ms': 0.001, 's': 1.0, 'm': 60.0, 'h': 3600.0}


class RelayError(Exception):
    """Base class for all relay errors."""


class ConfigurationError(RelayError):
    """Device settings or runtime configuration are missing or malformed."""


class ScanError(RelayError):
    """The advertisement scan ended for a reason other than deadline or cancellation."""


class TransportError(RelayError):
    """A single BLE operation failed."""


class DeviceSessionError(RelayError):
    """Connecting to, discovering or reading one device failed."""

    def __init__(self, identifier: str, message: str):
        super().__init__(f"{identifier}: {message}")
        self.identifier = identifier


class BrokerConnectionError(RelayError):
    """The MQTT broker could not be reached."""


class SerializationError(RelayError):
    """A message body could not be encoded."""

    def __init__(self, topic: str, message: str):
        super().__init__(f"{topic}: {message}")
        self.topic = topic


def normalize_identifier(value: str) -> str:
    """Normalize a MAC address or firmware name for registry lookups."""
    return value.strip().lower()


def is_device_identifier(value: str) -> bool:
    """Check whether a normalized identifier is a MAC address or an ATC firmware name."""
    return bool(MAC_ADDRESS_RE.fullmatch(value) or ATC_NAME_RE.fullmatch(value))


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse a duration into seconds.

    Accepts plain numbers (seconds) and Go-style strings such as
    ``5s``, ``500ms`` or ``1m30s``.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().lower()
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_RE.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if not text or pos != len(text):
                raise ValueError(f"Invalid duration: {value!r}")
    if seconds < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return seconds


@dataclass(frozen=True)
class SensorInfo:
    """Routing metadata for one configured sensor."""
    sensor_name: str
    topic: str


@dataclass(frozen=True)
class Advertisement:
    """An observed BLE advertisement."""
    address: str
    local_name: Optional[str] = None


@dataclass(frozen=True)
class MatchedDevice:
    """A registry entry that was seen during the scan."""
    identifier: str
    info: SensorInfo


@dataclass
class MeasurementSet:
    """Decoded values read from one device session."""
    address: str
    sensor_name: str
    values: Dict[str, Union[int, float]] = field(default_factory=dict)
    timestamp: int = 0


@dataclass(frozen=True)
class OutboundMessage:
    """A message ready to be published to its topic."""
    topic: str
    body: Mapping[str, Union[str, int, float]]

    def to_json(self) -> str:
        """Encode the body as compact JSON."""
        try:
            return json.dumps(dict(self.body), separators=(',', ':'), allow_nan=False)
        except (TypeError, ValueError) as e:
            raise SerializationError(self.topic, f"cannot encode payload: {e}") from e


@dataclass(frozen=True)
class BrokerConfig:
    """MQTT broker connection settings."""
    host: str = DEFAULT_MQTT_HOST
    port: int = DEFAULT_PORT
    client_id: str = DEFAULT_CLIENT_ID
    auth_type: str = 'none'
    credentials: Optional[Mapping[str, str]] = None
    tls_config: Optional[Mapping[str, str]] = None
    keepalive: int = DEFAULT_KEEPALIVE
    connect_timeout: float = CONNECTION_TIMEOUT_SEC
    disconnect_grace_ms: int = DISCONNECT_GRACE_MS


@dataclass(frozen=True)
class RelayConfig:
    """Settings for one relay process, resolved once at startup."""
    device_settings: str = DEFAULT_SETTINGS_FILE
    scan_duration: float = DEFAULT_SCAN_DURATION
    session_timeout: float = SESSION_TIMEOUT_SEC
    device: str = DEFAULT_DEVICE
    broker: BrokerConfig = field(default_factory=BrokerConfig)


# Device registry

def load_registry(settings_path: Union[str, Path], logger: logging.Logger) -> Dict[str, SensorInfo]:
    """Load the known sensors from an INI settings file.

    Each section is keyed by a MAC address or an ATC firmware name::

        [A4:C1:38:0C:5B:45]
        sensorname=edge of desk
        topic=temperature/room

    Sections with any other name are ignored.

    Raises:
        ConfigurationError: The file cannot be read or a recognized section
            is missing ``sensorname`` or ``topic``.
    """
    parser = configparser.ConfigParser(interpolation=None)
    try:
        with open(settings_path, 'r', encoding='utf-8') as f:
            parser.read_file(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Device settings file not found: {settings_path}") from e
    except (OSError, configparser.Error) as e:
        raise ConfigurationError(f"Can't load device settings file {settings_path}: {e}") from e

    return build_registry(parser, logger)


def build_registry(parser: configparser.ConfigParser, logger: logging.Logger) -> Dict[str, SensorInfo]:
    """Build the identifier -> SensorInfo mapping from parsed settings."""
    registry: Dict[str, SensorInfo] = {}

    for section in parser.sections():
        identifier = normalize_identifier(section)
        if not is_device_identifier(identifier):
            logger.debug(f"Ignoring settings section [{section}]: not a device address or name")
            continue

        fields = {}
        for key in ('sensorname', 'topic'):
            value = parser.get(section, key, fallback='').strip()
            if not value:
                raise ConfigurationError(f"Device [{section}] is missing required field '{key}'")
            fields[key] = value

        if identifier in registry:
            raise ConfigurationError(f"Device [{section}] is configured more than once")

        registry[identifier] = SensorInfo(
            sensor_name=fields['sensorname'].lower(),
            topic=fields['topic']
        )

    return registry


# Runtime configuration

def load_config(config_path: str) -> dict:
    """Load and validate the optional runtime configuration JSON file."""
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in configuration file: {e}") from e

    if not isinstance(config, dict):
        raise ConfigurationError("Configuration file must contain a JSON object")

    for key in ('scan_duration', 'session_timeout_sec'):
        if key in config:
            try:
                parse_duration(config[key])
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"{key} must be a non-negative duration: {e}") from e

    for key in ('device', 'device_settings'):
        if key in config and (not config[key] or not isinstance(config[key], str)):
            raise ConfigurationError(f"{key} must be a non-empty string, got: {config[key]}")

    mqtt_config = config.get('mqtt', {})
    if not isinstance(mqtt_config, dict):
        raise ConfigurationError("'mqtt' section must be a JSON object")

    port = mqtt_config.get('port', DEFAULT_PORT)
    if not isinstance(port, int) or isinstance(port, bool) or not 0 < port < 65536:
        raise ConfigurationError(f"MQTT port must be an integer between 1 and 65535, got: {port}")

    client_id = mqtt_config.get('client_id', DEFAULT_CLIENT_ID)
    _validate_client_id(client_id)

    auth_type = mqtt_config.get('auth_type', 'none')
    if auth_type not in AUTH_TYPES:
        raise ConfigurationError(f"Unsupported auth_type: {auth_type}")

    for key in ('keepalive', 'disconnect_grace_ms'):
        if key in mqtt_config:
            value = mqtt_config[key]
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ConfigurationError(f"MQTT {key} must be a non-negative integer, got: {value}")

    if 'connect_timeout_sec' in mqtt_config:
        timeout = mqtt_config['connect_timeout_sec']
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigurationError(f"MQTT connect_timeout_sec must be a positive number, got: {timeout}")

    return config


def _validate_client_id(client_id) -> None:
    if not client_id or not isinstance(client_id, str):
        raise ConfigurationError(f"MQTT client_id must be a non-empty string, got: {client_id}")
    if len(client_id) > MAX_CLIENT_ID_LENGTH:
        raise ConfigurationError(
            f"MQTT client_id too long (max {MAX_CLIENT_ID_LENGTH} chars): {len(client_id)} chars"
        )


def build_relay_config(args: argparse.Namespace, file_config: Optional[dict] = None) -> RelayConfig:
    """Merge the JSON configuration with command-line overrides."""
    file_config = file_config or {}
    mqtt_config = file_config.get('mqtt', {})

    def pick(arg_value, file_value, default):
        if arg_value is not None:
            return arg_value
        if file_value is not None:
            return file_value
        return default

    try:
        scan_duration = parse_duration(pick(args.scan_duration, file_config.get('scan_duration'),
                                            DEFAULT_SCAN_DURATION))
        session_timeout = parse_duration(pick(args.session_timeout, file_config.get('session_timeout_sec'),
                                              SESSION_TIMEOUT_SEC))
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    if session_timeout == 0:
        raise ConfigurationError("Session timeout must be greater than zero")

    port = pick(args.mqtt_port, mqtt_config.get('port'), DEFAULT_PORT)
    if not 0 < port < 65536:
        raise ConfigurationError(f"MQTT port must be between 1 and 65535, got: {port}")

    client_id = pick(args.mqtt_client_id, mqtt_config.get('client_id'), DEFAULT_CLIENT_ID)
    _validate_client_id(client_id)

    tls_config = None
    if mqtt_config.get('auth_type') == 'mtls':
        tls_config = {
            'ca_certs': mqtt_config.get('root_ca_path'),
            'certfile': mqtt_config.get('cert_path'),
            'keyfile': mqtt_config.get('key_path')
        }

    broker = BrokerConfig(
        host=pick(args.mqtt_host, mqtt_config.get('host'), DEFAULT_MQTT_HOST),
        port=port,
        client_id=client_id,
        auth_type=mqtt_config.get('auth_type', 'none'),
        credentials=mqtt_config.get('credentials'),
        tls_config=tls_config,
        keepalive=mqtt_config.get('keepalive', DEFAULT_KEEPALIVE),
        connect_timeout=mqtt_config.get('connect_timeout_sec', CONNECTION_TIMEOUT_SEC),
        disconnect_grace_ms=mqtt_config.get('disconnect_grace_ms', DISCONNECT_GRACE_MS)
    )

    return RelayConfig(
        device_settings=pick(args.device_settings, file_config.get('device_settings'), DEFAULT_SETTINGS_FILE),
        scan_duration=scan_duration,
        session_timeout=session_timeout,
        device=pick(args.device, file_config.get('device'), DEFAULT_DEVICE),
        broker=broker
    )


# BLE transport

@dataclass(frozen=True)
class GattCharacteristic:
    uuid: str
    properties: Tuple[str, ...]
    handle: int


@dataclass(frozen=True)
class GattService:
    uuid: str
    characteristics: Tuple[GattCharacteristic, ...]


class BLESession(ABC):
    """An open connection to one device."""

    address: str

    @abstractmethod
    async def discover_services(self) -> List[GattService]:
        ...

    @abstractmethod
    async def read_characteristic(self, characteristic: GattCharacteristic) -> bytes:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection and wait until the device reports it is gone."""


class BLETransport(ABC):
    """Scanning and connecting capability used by the relay."""

    @abstractmethod
    async def start_scan(self, callback: Callable[[Advertisement], None]) -> None:
        ...

    @abstractmethod
    async def stop_scan(self) -> None:
        ...

    @abstractmethod
    async def connect(self, device_filter: Callable[[Advertisement], bool], timeout: float) -> BLESession:
        ...


class BleakSession(BLESession):
    """BLESession backed by a BleakClient."""

    def __init__(self, device: BLEDevice, logger: logging.Logger):
        self.address = device.address
        self.logger = logger
        self._disconnected = asyncio.Event()
        self.client = BleakClient(device, disconnected_callback=self._on_disconnect)

    def _on_disconnect(self, client: BleakClient) -> None:
        """Callback when the device connection drops, locally or remotely."""
        self.logger.info(f"[ {self.address} ] is disconnected")
        self._disconnected.set()

    async def open(self) -> None:
        try:
            await self.client.connect()
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"failed to connect to {self.address}: {e}") from e

    async def discover_services(self) -> List[GattService]:
        # bleak resolves the GATT profile while connecting
        try:
            services = self.client.services
        except BleakError as e:
            raise TransportError(f"can't discover profile: {e}") from e

        return [
            GattService(
                uuid=service.uuid.lower(),
                characteristics=tuple(
                    GattCharacteristic(
                        uuid=char.uuid.lower(),
                        properties=tuple(char.properties),
                        handle=char.handle
                    )
                    for char in service.characteristics
                )
            )
            for service in services
        ]

    async def read_characteristic(self, characteristic: GattCharacteristic) -> bytes:
        try:
            return bytes(await self.client.read_gatt_char(characteristic.handle))
        except (BleakError, OSError) as e:
            raise TransportError(f"failed to read characteristic {characteristic.uuid}: {e}") from e

    async def disconnect(self) -> None:
        self.logger.info(f"Disconnecting [ {self.address} ]")
        try:
            await self.client.disconnect()
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            self.logger.warning(f"{ICON_WARNING} Error during disconnect from {self.address}: {e!r}")

        # The callback may already have fired if the device dropped the link itself
        try:
            await asyncio.wait_for(self._disconnected.wait(), timeout=DISCONNECT_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            self.logger.warning(
                f"{ICON_WARNING} No disconnect notification from {self.address} "
                f"after {DISCONNECT_TIMEOUT_SEC}s"
            )


class BleakTransport(BLETransport):
    """BLETransport backed by bleak, optionally bound to one BlueZ adapter."""

    def __init__(self, logger: logging.Logger, adapter: Optional[str] = None):
        self.logger = logger
        self.adapter = adapter
        self._scanner: Optional[BleakScanner] = None

    @classmethod
    def from_device(cls, device: str, logger: logging.Logger) -> 'BleakTransport':
        """Create a transport for a ``--device`` selector (``default`` or an adapter name)."""
        adapter = None if device == DEFAULT_DEVICE else device
        if adapter:
            logger.info(f"Using Bluetooth adapter: {adapter}")
        return cls(logger, adapter=adapter)

    def _bluez_args(self) -> dict:
        return {'adapter': self.adapter} if self.adapter else {}

    async def start_scan(self, callback: Callable[[Advertisement], None]) -> None:
        def _detection_callback(device: BLEDevice, advertisement: AdvertisementData):
            callback(Advertisement(
                address=device.address,
                local_name=advertisement.local_name or device.name
            ))

        self._scanner = BleakScanner(
            detection_callback=_detection_callback,
            scanning_mode="active",
            bluez=self._bluez_args()
        )
        try:
            await self._scanner.start()
        except (BleakError, OSError) as e:
            self._scanner = None
            raise ScanError(f"Failed to start BLE scanning: {e}") from e

    async def stop_scan(self) -> None:
        if self._scanner is None:
            return
        scanner, self._scanner = self._scanner, None
        try:
            await scanner.stop()
        except (BleakError, OSError) as e:
            raise ScanError(f"BLE scanning failed: {e}") from e

    async def connect(self, device_filter: Callable[[Advertisement], bool], timeout: float) -> BLESession:
        def _filter(device: BLEDevice, advertisement: AdvertisementData) -> bool:
            return device_filter(Advertisement(
                address=device.address,
                local_name=advertisement.local_name or device.name
            ))

        try:
            device = await BleakScanner.find_device_by_filter(
                _filter, timeout=timeout, bluez=self._bluez_args()
            )
        except (BleakError, OSError) as e:
            raise TransportError(f"scan for device failed: {e}") from e
        if device is None:
            raise TransportError(f"device not seen within {timeout}s")

        session = BleakSession(device, self.logger)
        await session.open()
        return session


# Advertisement matcher

class AdvertisementMatcher:
    """Collects advertisements that belong to registry devices.

    Lookup is by address first, then by local name. Repeated advertisements
    from the same device overwrite the earlier match.
    """
    __slots__ = ('registry', 'matched', 'complete')

    def __init__(self, registry: Mapping[str, SensorInfo]):
        self.registry = registry
        self.matched: Dict[str, MatchedDevice] = {}
        self.complete = asyncio.Event()

    def observe(self, advertisement: Advertisement) -> Optional[MatchedDevice]:
        """Record an advertisement if it belongs to a known device."""
        candidates = [normalize_identifier(advertisement.address)]
        if advertisement.local_name:
            candidates.append(normalize_identifier(advertisement.local_name))

        for identifier in candidates:
            info = self.registry.get(identifier)
            if info is not None:
                device = MatchedDevice(identifier=identifier, info=info)
                self.matched[identifier] = device
                if len(self.matched) == len(self.registry):
                    self.complete.set()
                return device
        return None


async def discover_devices(
    transport: BLETransport,
    registry: Mapping[str, SensorInfo],
    scan_duration: float,
    stop_event: asyncio.Event,
    logger: logging.Logger
) -> Dict[str, MatchedDevice]:
    """Scan for registry devices until the duration elapses or the scan is stopped.

    A ``scan_duration`` of 0 scans until ``stop_event`` is set. The scan also
    ends early once every registry device has been seen.

    Raises:
        ScanError: The transport failed to scan.
    """
    matcher = AdvertisementMatcher(registry)

    def _on_advertisement(advertisement: Advertisement) -> None:
        device = matcher.observe(advertisement)
        if device is not None:
            logger.debug(
                f"{ICON_RECEIVE} Advertisement from known device {device.identifier} "
                f"({device.info.sensor_name})"
            )

    if scan_duration:
        logger.info(f"Scanning for {scan_duration}s...")
    else:
        logger.info("Scanning until interrupted...")

    await transport.start_scan(_on_advertisement)
    waiters = [
        asyncio.ensure_future(stop_event.wait()),
        asyncio.ensure_future(matcher.complete.wait())
    ]
    try:
        await asyncio.wait(
            waiters,
            timeout=scan_duration or None,
            return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for waiter in waiters:
            waiter.cancel()
        await transport.stop_scan()

    if stop_event.is_set():
        logger.info(f"{ICON_INFO} Scan canceled")
    elif matcher.complete.is_set():
        logger.info(f"{ICON_INFO} All known devices seen, scan stopped early")
    else:
        logger.info("Scan done")

    return dict(matcher.matched)


# Device poller

def parse_little_endian_value(data: bytes) -> int:
    """Decode an unsigned 16-bit little-endian field."""
    if len(data) < 2:
        raise ValueError(f"expected 2 bytes, got {len(data)}")
    return struct.unpack_from('<H', data)[0]


def decode_temperature(data: bytes) -> float:
    """Temperature in degrees Celsius, 0.1 resolution."""
    return round(parse_little_endian_value(data) / 10, 1)


def decode_humidity(data: bytes) -> int:
    """Relative humidity in whole percent (the fractional part is truncated)."""
    return parse_little_endian_value(data) // 100


def decode_battery_level(data: bytes) -> int:
    """Battery level in percent (single unsigned byte)."""
    if not data:
        raise ValueError("expected 1 byte, got 0")
    return data[0]


# characteristic UUID -> (measurement name, decoder)
CHARACTERISTIC_DECODERS: Dict[str, Tuple[str, Callable[[bytes], Union[int, float]]]] = {
    TEMPERATURE_CHAR_UUID: ('temperature', decode_temperature),
    HUMIDITY_CHAR_UUID: ('humidity', decode_humidity),
    BATTERY_LEVEL_CHAR_UUID: ('battery', decode_battery_level),
}


def current_timestamp() -> int:
    """Current UTC time in whole seconds since the epoch."""
    return int(datetime.now(timezone.utc).timestamp())


class DevicePoller:
    """Reads the measurements of one matched device per call, under a deadline."""

    def __init__(
        self,
        transport: BLETransport,
        logger: logging.Logger,
        session_timeout: float = SESSION_TIMEOUT_SEC
    ):
        self.transport = transport
        self.logger = logger
        self.session_timeout = session_timeout

    async def poll(self, device: MatchedDevice) -> MeasurementSet:
        """Connect, read and disconnect one device.

        The session is always torn down before this returns.

        Raises:
            DeviceSessionError: Connect or discovery failed, or the deadline passed.
        """
        try:
            return await asyncio.wait_for(self._poll_session(device), timeout=self.session_timeout)
        except asyncio.TimeoutError as e:
            raise DeviceSessionError(
                device.identifier, f"no result within {self.session_timeout}s"
            ) from e
        except TransportError as e:
            raise DeviceSessionError(device.identifier, str(e)) from e

    async def _poll_session(self, device: MatchedDevice) -> MeasurementSet:
        identifier = device.identifier

        def device_filter(advertisement: Advertisement) -> bool:
            return (
                normalize_identifier(advertisement.address) == identifier
                or normalize_identifier(advertisement.local_name or '') == identifier
            )

        self.logger.info(f"Connecting to {identifier}...")
        session = await self.transport.connect(device_filter, self.session_timeout)
        try:
            self.logger.info(f"Discovering profile for device {session.address}...")
            services = await session.discover_services()
            measurements = MeasurementSet(address=session.address, sensor_name=device.info.sensor_name)
            await self._read_characteristics(session, services, measurements)
            measurements.timestamp = current_timestamp()
            self.logger.debug(f"Got measurements from {identifier}: {measurements.values}")
            return measurements
        finally:
            await session.disconnect()

    async def _read_characteristics(
        self,
        session: BLESession,
        services: List[GattService],
        measurements: MeasurementSet
    ) -> None:
        for service in services:
            # only the environment sensing and battery services are of interest
            if service.uuid not in SERVICES_OF_INTEREST:
                continue

            for char in service.characteristics:
                if 'read' not in char.properties or char.uuid not in CHARACTERISTIC_DECODERS:
                    continue

                name, decoder = CHARACTERISTIC_DECODERS[char.uuid]
                try:
                    raw = await session.read_characteristic(char)
                except TransportError as e:
                    self.logger.warning(f"{ICON_WARNING} Failed to read {name} from {session.address}: {e}")
                    continue

                try:
                    measurements.values[name] = decoder(raw)
                except ValueError as e:
                    self.logger.warning(
                        f"{ICON_WARNING} Can't decode {name} from {session.address} "
                        f"(raw {raw.hex()}): {e}"
                    )


# Payload assembler

REQUIRED_MEASUREMENTS = ('temperature', 'humidity')


def assemble_message(measurements: MeasurementSet, info: SensorInfo) -> Optional[OutboundMessage]:
    """Build the outbound message for one device.

    Returns None unless both temperature and humidity were read.
    """
    values = measurements.values
    if any(name not in values for name in REQUIRED_MEASUREMENTS):
        return None

    body = {
        'address': measurements.address,
        'sensorname': info.sensor_name,
        'temperature': values['temperature'],
        'humidity': values['humidity'],
        'timestamp': measurements.timestamp,
    }
    if 'battery' in values:
        body['battery'] = values['battery']

    return OutboundMessage(topic=info.topic, body=body)


# Publisher

class MQTTPublisher:
    """Publishes a batch of messages over a single paho-mqtt connection."""

    @staticmethod
    def _validate_cert_file(file_path: str, file_type: str) -> None:
        """Validate that a certificate file exists and is not empty."""
        expanded_path = os.path.expandvars(file_path)
        cert_file = Path(expanded_path)
        if not cert_file.exists():
            raise ConfigurationError(f"{file_type} file not found: {expanded_path}")
        if cert_file.stat().st_size == 0:
            raise ConfigurationError(f"{file_type} file is empty: {expanded_path}")

    def __init__(self, config: BrokerConfig, logger: logging.Logger):
        self.broker = config.host
        self.port = config.port
        self.client_id = config.client_id
        self.keepalive = config.keepalive
        self.connect_timeout = config.connect_timeout
        self.disconnect_grace_ms = config.disconnect_grace_ms
        self.auth_type = config.auth_type
        self.logger = logger

        self.client: Optional[mqtt.Client] = None
        self.connection_event = asyncio.Event()
        self._connect_error: Optional[str] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        if config.auth_type == "mtls":
            self._configure_mtls(dict(config.tls_config or {}))
        elif config.auth_type == "userpass":
            self._configure_userpass(dict(config.credentials or {}))
        elif config.auth_type == "none":
            self.logger.debug("No MQTT authentication configured")
        else:
            raise ConfigurationError(f"Unsupported auth_type: {config.auth_type}")

    def _configure_mtls(self, tls_config: Dict) -> None:
        """Configure mutual TLS authentication."""
        ca_certs = tls_config.get('ca_certs')
        certfile = tls_config.get('certfile')
        keyfile = tls_config.get('keyfile')

        if not all([ca_certs, certfile, keyfile]):
            raise ConfigurationError("mtls auth requires root_ca_path, cert_path, and key_path")

        self._validate_cert_file(ca_certs, "CA certificate")
        self._validate_cert_file(certfile, "Client certificate")
        self._validate_cert_file(keyfile, "Private key")

        self.ca_filepath = os.path.expandvars(ca_certs)
        self.cert_filepath = os.path.expandvars(certfile)
        self.key_filepath = os.path.expandvars(keyfile)

        self.logger.info("Configured mTLS authentication")

    def _configure_userpass(self, credentials: Dict) -> None:
        """Configure username/password authentication."""
        self.username = credentials.get('username')
        self.password = credentials.get('password')

        if not self.username:
            raise ConfigurationError("userpass auth requires username")

        self.logger.info(f"Configured username/password authentication for user: {self.username}")

    def _signal_connection(self) -> None:
        # paho callbacks run on its network thread
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.connection_event.set)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        """Callback when the broker answers the connect request."""
        if reason_code == 0:
            self.logger.info(f"{ICON_SUCCESS} [MQTT] Connected to {self.broker}:{self.port}")
        else:
            self._connect_error = f"connection refused: {reason_code}"
            self.logger.error(f"{ICON_ERROR} [MQTT] Connection refused by {self.broker}:{self.port}: {reason_code}")
        self._signal_connection()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        """Callback when the connection is closed."""
        if reason_code != 0:
            self.logger.warning(f"{ICON_WARNING} [MQTT] Connection lost: {reason_code}")
        else:
            self.logger.info("[MQTT] Disconnected")

    def _on_publish(self, client, userdata, mid, reason_code=None, properties=None):
        """Callback when a message has left the client."""
        self.logger.debug(f"[MQTT] Message published (mid={mid})")

    async def connect(self) -> None:
        """Open the broker connection.

        Raises:
            BrokerConnectionError: The broker refused or did not answer in time.
        """
        self.logger.info(f"[MQTT] connecting to host: {self.broker}:{self.port}")
        self._loop = asyncio.get_running_loop()
        self._connect_error = None
        self.connection_event.clear()

        self.client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=True
        )
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_publish = self._on_publish

        if self.auth_type == "mtls":
            self.client.tls_set(
                ca_certs=self.ca_filepath,
                certfile=self.cert_filepath,
                keyfile=self.key_filepath,
                tls_version=ssl.PROTOCOL_TLSv1_2
            )
        elif self.auth_type == "userpass":
            self.client.username_pw_set(self.username, self.password)
            if self.port == 8883:
                self.client.tls_set(tls_version=ssl.PROTOCOL_TLSv1_2)

        try:
            self.client.connect_async(self.broker, self.port, keepalive=self.keepalive)
            self.client.loop_start()
        except (OSError, ValueError) as e:
            self.client = None
            raise BrokerConnectionError(f"Failed to connect to MQTT broker {self.broker}:{self.port}: {e}") from e

        try:
            await asyncio.wait_for(self.connection_event.wait(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            self._connect_error = f"no answer after {self.connect_timeout}s"

        if self._connect_error is not None:
            self._shutdown_client()
            raise BrokerConnectionError(
                f"Failed to connect to MQTT broker {self.broker}:{self.port}: {self._connect_error}"
            )

    def publish(self, message: OutboundMessage) -> mqtt.MQTTMessageInfo:
        """Queue one message with QoS 0 and no retain flag.

        Raises:
            SerializationError: The message body could not be encoded.
        """
        if not self.client:
            raise BrokerConnectionError("Not connected to MQTT broker")

        payload = message.to_json()
        self.logger.info(f"{ICON_PUBLISH} [MQTT] Sending payload to {message.topic}: {payload}")
        return self.client.publish(topic=message.topic, payload=payload, qos=0, retain=False)

    async def publish_all(self, messages: List[OutboundMessage]) -> Dict[str, int]:
        """Publish every message over one connection, then disconnect.

        Nothing is done when ``messages`` is empty.

        Returns:
            Counts of published messages and publish errors.
        """
        stats = {'messages_published': 0, 'publish_errors': 0}
        if not messages:
            self.logger.info("No messages to publish")
            return stats

        await self.connect()
        pending: List[Tuple[str, mqtt.MQTTMessageInfo]] = []
        try:
            for message in messages:
                try:
                    info = self.publish(message)
                except SerializationError as e:
                    self.logger.error(f"{ICON_ERROR} [MQTT] Can't serialize payload: {e}")
                    stats['publish_errors'] += 1
                    continue

                if info.rc != mqtt.MQTT_ERR_SUCCESS:
                    self.logger.error(
                        f"{ICON_ERROR} [MQTT] Failed to publish to {message.topic}: "
                        f"{mqtt.error_string(info.rc)}"
                    )
                    stats['publish_errors'] += 1
                    continue
                pending.append((message.topic, info))

            # one grace period for the whole batch
            grace = self.disconnect_grace_ms / 1000.0
            deadline = self._loop.time() + grace
            for topic, info in pending:
                remaining = max(0.0, deadline - self._loop.time())
                try:
                    await asyncio.to_thread(info.wait_for_publish, remaining)
                except (RuntimeError, ValueError) as e:
                    self.logger.error(f"{ICON_ERROR} [MQTT] Publish to {topic} not completed: {e}")
                    stats['publish_errors'] += 1
                    continue
                if info.is_published():
                    stats['messages_published'] += 1
                else:
                    self.logger.warning(
                        f"{ICON_WARNING} [MQTT] Publish to {topic} still pending after {grace}s"
                    )
                    stats['publish_errors'] += 1
        finally:
            self.disconnect()

        return stats

    def _shutdown_client(self) -> None:
        if self.client:
            self.client.loop_stop()
            self.client = None

    def disconnect(self) -> None:
        """Disconnect from MQTT broker."""
        if self.client:
            self.logger.info("[MQTT] Disconnecting from broker")
            self.client.disconnect()
        self._shutdown_client()


# Relay cycle

class SensorRelay:
    """Runs discover, poll, assemble and publish for the configured sensors."""

    def __init__(
        self,
        config: RelayConfig,
        registry: Mapping[str, SensorInfo],
        transport: BLETransport,
        publisher: MQTTPublisher,
        logger: logging.Logger
    ):
        self.config = config
        self.registry = registry
        self.transport = transport
        self.publisher = publisher
        self.logger = logger
        self.poller = DevicePoller(transport, logger, session_timeout=config.session_timeout)
        self.stats: Dict[str, int] = {}

    def _reset_stats(self) -> None:
        self.stats = {
            'devices_matched': 0,
            'devices_polled': 0,
            'device_errors': 0,
            'messages_built': 0,
            'messages_published': 0,
            'publish_errors': 0
        }

    async def _poll_until_stopped(self, device: MatchedDevice, stop_event: asyncio.Event) -> MeasurementSet:
        """Poll one device, abandoning the session if the stop event fires first."""
        poll_task = asyncio.ensure_future(self.poller.poll(device))
        stop_task = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait([poll_task, stop_task], return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()

        if poll_task.done():
            return poll_task.result()

        # cancelling runs the session teardown before the task finishes
        poll_task.cancel()
        try:
            await poll_task
        except asyncio.CancelledError:
            pass
        raise DeviceSessionError(device.identifier, "canceled")

    async def poll_devices(
        self,
        matched: Mapping[str, MatchedDevice],
        stop_event: asyncio.Event
    ) -> Dict[str, OutboundMessage]:
        """Poll matched devices one at a time and assemble their messages by topic."""
        messages: Dict[str, OutboundMessage] = {}

        for identifier in sorted(matched):
            if stop_event.is_set():
                self.logger.info(f"{ICON_INFO} Stop requested, skipping remaining devices")
                break

            device = matched[identifier]
            try:
                measurements = await self._poll_until_stopped(device, stop_event)
            except DeviceSessionError as e:
                self.stats['device_errors'] += 1
                self.logger.error(f"{ICON_ERROR} Error polling device {e}")
                continue

            self.stats['devices_polled'] += 1
            message = assemble_message(measurements, device.info)
            if message is None:
                missing = [name for name in REQUIRED_MEASUREMENTS if name not in measurements.values]
                self.logger.warning(
                    f"{ICON_WARNING} Device {identifier} did not report {', '.join(missing)}, "
                    f"nothing to publish"
                )
                continue

            if message.topic in messages:
                self.logger.warning(
                    f"{ICON_WARNING} Topic {message.topic} already has a payload, "
                    f"replacing it with the one from {identifier}"
                )
            else:
                self.stats['messages_built'] += 1
            self.logger.info(f"{ICON_SUCCESS} Got payload from {identifier}: {dict(message.body)}")
            messages[message.topic] = message

        return messages

    async def run_cycle(self, stop_event: Optional[asyncio.Event] = None) -> Dict[str, int]:
        """Run one discover-poll-publish cycle.

        Raises:
            ScanError: The scan failed.
            BrokerConnectionError: Messages were ready but the broker was unreachable.
        """
        stop_event = stop_event or asyncio.Event()
        self._reset_stats()

        matched = await discover_devices(
            self.transport, self.registry, self.config.scan_duration, stop_event, self.logger
        )
        self.stats['devices_matched'] = len(matched)

        if not matched:
            self.logger.info("No devices found")
            return self.stats

        self.logger.info(f"{len(matched)} devices found:")
        for identifier in sorted(matched):
            self.logger.info(f"  ID: {identifier}, {matched[identifier].info.sensor_name}")

        messages = await self.poll_devices(matched, stop_event)
        self.logger.info(f"Got {len(messages)} payloads")

        self.stats.update(await self.publisher.publish_all(list(messages.values())))
        self.logger.info(f"Cycle stats: {self.stats}")
        return self.stats


def _setup_signal_handlers(stop_event: asyncio.Event, logger: logging.Logger) -> Callable[[], None]:
    """Route SIGINT and SIGTERM to the stop event.

    Returns a callable that restores the previous handlers.
    """
    loop = asyncio.get_running_loop()
    loop_handlers: List[int] = []
    previous_handlers: Dict[int, object] = {}

    def _request_stop(signum) -> None:
        logger.info(f"Received signal {signum}, stopping...")
        stop_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _request_stop, signum)
            loop_handlers.append(signum)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, lambda s, frame: loop.call_soon_threadsafe(_request_stop, s))

    def _restore() -> None:
        for signum in loop_handlers:
            loop.remove_signal_handler(signum)
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)

    return _restore


async def run(config: RelayConfig, registry: Mapping[str, SensorInfo], logger: logging.Logger) -> Dict[str, int]:
    """Wire the bleak transport and MQTT publisher and run one cycle."""
    stop_event = asyncio.Event()
    restore_signal_handlers = _setup_signal_handlers(stop_event, logger)
    try:
        transport = BleakTransport.from_device(config.device, logger)
        publisher = MQTTPublisher(config.broker, logger)
        relay = SensorRelay(config, registry, transport, publisher, logger)
        return await relay.run_cycle(stop_event)
    finally:
        restore_signal_handlers()


def setup_logging(log_level: str = DEFAULT_LOG_LEVEL) -> logging.Logger:
    """Configure logging with appropriate level.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger('ATCRelay')

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logger.setLevel(numeric_level)

    handler = logging.StreamHandler()
    handler.setLevel(numeric_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)

    return logger


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Relay ATC BLE sensor readings to MQTT',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Scan for 5 seconds and publish to a local broker
  %(prog)s --device-settings devices.ini

  # Scan for 30 seconds on hci1, publish to a remote broker
  %(prog)s --device hci1 --sd 30s --mqtt-host broker.lan

  # Broker credentials and TLS from a JSON file
  %(prog)s -c config.json

Device settings file format: See devices.example.ini
        """
    )

    parser.add_argument('-c', '--config', help='Optional runtime configuration JSON file')
    parser.add_argument('--device', help=f'BLE adapter to use (default: {DEFAULT_DEVICE})')
    parser.add_argument(
        '--sd', '--scan-duration',
        dest='scan_duration',
        help=f'Scanning duration, e.g. 5s or 1m; 0 scans until interrupted (default: {DEFAULT_SCAN_DURATION:g}s)'
    )
    parser.add_argument(
        '--device-settings',
        help=f'Device settings file (default: {DEFAULT_SETTINGS_FILE})'
    )
    parser.add_argument('--mqtt-host', help=f'MQTT host (default: {DEFAULT_MQTT_HOST})')
    parser.add_argument('--mqtt-port', type=int, help=f'MQTT port (default: {DEFAULT_PORT})')
    parser.add_argument('--mqtt-client-id', help=f'MQTT client ID (default: {DEFAULT_CLIENT_ID})')
    parser.add_argument(
        '--session-timeout',
        help=f'Deadline for each device session (default: {SESSION_TIMEOUT_SEC:g}s)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default=DEFAULT_LOG_LEVEL,
        help=f'Set logging level (default: {DEFAULT_LOG_LEVEL})'
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_arg_parser().parse_args(argv)
    logger = setup_logging(log_level=args.log_level)

    try:
        file_config = None
        if args.config:
            logger.info(f"Loading configuration from: {args.config}")
            file_config = load_config(args.config)
        config = build_relay_config(args, file_config)

        registry = load_registry(config.device_settings, logger)
        logger.info(f"Known sensors: {registry}")
        if not registry:
            logger.info("No known sensors, exiting...")
            return 0

        asyncio.run(run(config, registry, logger))

    except ConfigurationError as e:
        logger.error(f"{ICON_ERROR} Configuration error: {e}")
        return 1
    except ScanError as e:
        logger.error(f"{ICON_ERROR} Scan failed: {e}")
        return 1
    except BrokerConnectionError as e:
        logger.error(f"{ICON_ERROR} [MQTT] {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=(args.log_level == 'DEBUG'))
        return 1

    logger.info("All connections have finished.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
