"""
DeviceClient - typed request/response wrappers for the device HTTP control plane.

Each call is a single exchange with the device: no retries, no caching. Any
failure (connection refused, timeout, non-2xx status, malformed JSON) is
raised as TransportError. Deciding that a failure does not matter is left to
the managers one layer up.

Uses adafruit_requests.Session, which is blocking. The exchange and the
response read run through Scheduler.run_blocking() so the session timers keep
their cadence while a request is in flight.
"""

import json
import os
import socket
import ssl
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, BinaryIO

import adafruit_requests

from core.errors import TransportError
from core.logging_helper import logger
from core.scheduler import Scheduler
from core.settings import DEFAULT_DEVICE_BASE_URL

# Passed as bytes_total when the upload size cannot be computed
SIZE_UNKNOWN = None

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
BINARY_CONTENT_TYPE = "application/octet-stream"

ProgressCallback = Callable[[int, int | None], None]


@dataclass(frozen=True)
class DeviceEndpoint:
    """Immutable descriptor of one device endpoint."""

    name: str
    path: str
    method: str
    request_fields: tuple[str, ...] = ()
    response_fields: tuple[str, ...] = ()
    expects_json: bool = True


class Endpoints:
    """The fixed endpoint set served by the device."""

    AP_SSID = DeviceEndpoint("ap_ssid", "/apSSID.json", "GET", response_fields=("ssid",))
    OTA_STATUS = DeviceEndpoint(
        "ota_status",
        "/OTAstatus",
        "POST",
        request_fields=("ota_update_status",),
        response_fields=("compile_date", "compile_time", "ota_update_status"),
    )
    OTA_UPDATE = DeviceEndpoint("ota_update", "/OTAupdate", "POST", expects_json=False)
    DHT_SENSOR = DeviceEndpoint("dht_sensor", "/dhtSensor.json", "GET", response_fields=("temp", "humidity"))
    LOCAL_TIME = DeviceEndpoint("local_time", "/localTime.json", "GET", response_fields=("time",))
    WIFI_CONNECT = DeviceEndpoint(
        "wifi_connect",
        "/wifiConnect.json",
        "POST",
        request_fields=("my-connect-ssid", "my-connect-pwd", "timestamp"),
        response_fields=("status",),
    )
    WIFI_CONNECT_STATUS = DeviceEndpoint(
        "wifi_connect_status",
        "/wifiConnectStatus",
        "POST",
        request_fields=("wifi_connect_status",),
        response_fields=("wifi_connect_status",),
    )
    WIFI_CONNECT_INFO = DeviceEndpoint(
        "wifi_connect_info", "/wifiConnectInfo.json", "GET", response_fields=("ap", "ip", "netmask", "gw")
    )
    WIFI_DISCONNECT = DeviceEndpoint(
        "wifi_disconnect", "/wifiDisconnect.json", "DELETE", request_fields=("timestamp",), response_fields=("status",)
    )
    SYSTEM_STATUS = DeviceEndpoint(
        "system_status",
        "/systemStatus.json",
        "GET",
        response_fields=(
            "heap_free",
            "heap_min",
            "uptime_seconds",
            "firmware_version",
            "compile_date",
            "compile_time",
            "wifi_sta_connected",
            "wifi_ap_clients",
        ),
    )
    WIFI_SCAN = DeviceEndpoint("wifi_scan", "/wifiScan.json", "GET", response_fields=("ssid", "rssi", "auth"))

    @classmethod
    def all(cls) -> list[DeviceEndpoint]:
        return [value for value in vars(cls).values() if isinstance(value, DeviceEndpoint)]


@dataclass
class DeviceResponse:
    """Result of a successful exchange."""

    endpoint: DeviceEndpoint
    status_code: int
    data: Any = None
    content: bytes = b""

    def get(self, key: str, default: Any = None) -> Any:
        if isinstance(self.data, dict):
            return self.data.get(key, default)
        return default


@dataclass(frozen=True)
class ConnectInfo:
    """Snapshot of the device's station-mode connection."""

    ap: str = ""
    ip: str = ""
    netmask: str = ""
    gateway: str = ""

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "ConnectInfo":
        return cls(
            ap=str(data.get("ap", "")),
            ip=str(data.get("ip", "")),
            netmask=str(data.get("netmask", "")),
            gateway=str(data.get("gw", "")),
        )


@dataclass(frozen=True)
class SensorReading:
    temp: str
    humidity: str


@dataclass(frozen=True)
class OtaStatusReport:
    code: int
    compile_date: str = ""
    compile_time: str = ""

    @property
    def firmware_version(self) -> str:
        return f"{self.compile_date} - {self.compile_time}"


@dataclass(frozen=True)
class AccessPoint:
    ssid: str
    rssi: int
    auth: str


@dataclass(frozen=True)
class SystemStatus:
    heap_free: int = 0
    heap_min: int = 0
    uptime_seconds: int = 0
    firmware_version: str = ""
    compile_date: str = ""
    compile_time: str = ""
    wifi_sta_connected: bool = False
    wifi_ap_clients: int = 0
    extra: dict[str, Any] = field(default_factory=dict)


class DeviceClient:
    """
    Endpoint client for one device.

    Owns the HTTP session. Tests inject a fake session exposing
    ``request(method, url, data=..., headers=...)``.
    """

    READ_CHUNK_SIZE = 4096

    def __init__(
        self,
        base_url: str | None = None,
        session: Any = None,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        """
        Args:
            base_url: Device root URL; defaults to $DEVICE_BASE_URL
            session: Optional adafruit_requests.Session (for tests only)
            clock_ms: Wall clock in milliseconds used for request timestamps
        """
        self.logger = logger("devpanel.client")
        self.base_url = (base_url or os.getenv("DEVICE_BASE_URL", DEFAULT_DEVICE_BASE_URL)).rstrip("/")
        self._session = session
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))

    def _get_session(self) -> Any:
        """Lazily create the HTTP session bound to the host socket stack."""
        if self._session is None:
            self._session = adafruit_requests.Session(socket, ssl.create_default_context())
        return self._session

    def close(self) -> None:
        """Drop the HTTP session; the next call creates a fresh one."""
        self._session = None

    def _build_request_headers(self, content_type: str | None = None, extra: dict[str, str] | None = None) -> dict[str, str]:
        """
        Build request headers with Connection: close.

        The device serves a handful of sockets; closing after each exchange
        returns them to the pool right away.
        """
        headers = {"Connection": "close"}
        if content_type:
            headers["Content-Type"] = content_type
        if extra:
            headers.update(extra)
        return headers

    def _timestamp_body(self) -> str:
        return f"timestamp={self._clock_ms()}"

    async def call(
        self,
        endpoint: DeviceEndpoint,
        payload: Any = None,
        headers: dict[str, str] | None = None,
        content_type: str | None = None,
    ) -> DeviceResponse:
        """
        Perform one exchange with the device.

        Args:
            endpoint: Endpoint descriptor
            payload: Request body (str or bytes), or None
            headers: Extra request headers
            content_type: Content-Type of the body, if any

        Returns:
            DeviceResponse with the parsed JSON body when the endpoint returns JSON

        Raises:
            TransportError: On any failure of the exchange
        """
        url = f"{self.base_url}{endpoint.path}"
        request_headers = self._build_request_headers(content_type, headers)
        self.logger.debug(f"{endpoint.method} {endpoint.path}")

        session = self._get_session()
        try:
            response = await Scheduler.run_blocking(
                session.request, endpoint.method, url, data=payload, headers=request_headers
            )
        except (OSError, RuntimeError, ValueError, adafruit_requests.OutOfRetries) as e:
            self.logger.debug(f"{endpoint.method} {endpoint.path} failed: {e}")
            raise TransportError(endpoint, str(e) or e.__class__.__name__) from e

        try:
            status_code = response.status_code
            if not 200 <= status_code < 300:
                raise TransportError(endpoint, f"HTTP {status_code}", status_code=status_code)
            content = await Scheduler.run_blocking(_read_content, response)
        except (OSError, RuntimeError) as e:
            raise TransportError(endpoint, f"Reading response failed: {e}") from e
        finally:
            await Scheduler.run_blocking(response.close)

        data = None
        if endpoint.expects_json:
            try:
                data = json.loads(content)
            except ValueError as e:
                raise TransportError(endpoint, f"Malformed response: {e}", status_code=status_code) from e

        return DeviceResponse(endpoint, status_code, data, content)

    # --- Typed wrappers ---

    async def get_ap_ssid(self) -> str:
        response = await self.call(Endpoints.AP_SSID)
        return str(response.get("ssid", ""))

    async def get_ota_status(self) -> OtaStatusReport:
        response = await self.call(Endpoints.OTA_STATUS, payload="ota_update_status", content_type=FORM_CONTENT_TYPE)
        try:
            code = int(response.get("ota_update_status", 0))
        except (TypeError, ValueError) as e:
            raise TransportError(Endpoints.OTA_STATUS, f"Malformed status code: {e}") from e
        return OtaStatusReport(
            code=code,
            compile_date=str(response.get("compile_date", "")),
            compile_time=str(response.get("compile_time", "")),
        )

    async def get_sensor_reading(self) -> SensorReading:
        response = await self.call(Endpoints.DHT_SENSOR)
        return SensorReading(temp=str(response.get("temp", "")), humidity=str(response.get("humidity", "")))

    async def get_local_time(self) -> str:
        response = await self.call(Endpoints.LOCAL_TIME)
        return str(response.get("time", ""))

    async def submit_wifi_credentials(self, ssid: str, password: str) -> DeviceResponse:
        headers = {"my-connect-ssid": ssid, "my-connect-pwd": password}
        return await self.call(
            Endpoints.WIFI_CONNECT, payload=self._timestamp_body(), headers=headers, content_type=FORM_CONTENT_TYPE
        )

    async def get_wifi_connect_status(self) -> int:
        response = await self.call(
            Endpoints.WIFI_CONNECT_STATUS, payload="wifi_connect_status", content_type=FORM_CONTENT_TYPE
        )
        try:
            return int(response.get("wifi_connect_status", 0))
        except (TypeError, ValueError) as e:
            raise TransportError(Endpoints.WIFI_CONNECT_STATUS, f"Malformed status code: {e}") from e

    async def get_connect_info(self) -> ConnectInfo:
        response = await self.call(Endpoints.WIFI_CONNECT_INFO)
        return ConnectInfo.from_json(response.data if isinstance(response.data, dict) else {})

    async def disconnect_wifi(self) -> DeviceResponse:
        return await self.call(Endpoints.WIFI_DISCONNECT, payload=self._timestamp_body(), content_type=FORM_CONTENT_TYPE)

    async def get_system_status(self) -> SystemStatus:
        response = await self.call(Endpoints.SYSTEM_STATUS)
        data = response.data if isinstance(response.data, dict) else {}
        known = set(Endpoints.SYSTEM_STATUS.response_fields)
        try:
            return SystemStatus(
                heap_free=int(data.get("heap_free", 0)),
                heap_min=int(data.get("heap_min", 0)),
                uptime_seconds=int(data.get("uptime_seconds", 0)),
                firmware_version=str(data.get("firmware_version", "")),
                compile_date=str(data.get("compile_date", "")),
                compile_time=str(data.get("compile_time", "")),
                wifi_sta_connected=bool(data.get("wifi_sta_connected", False)),
                wifi_ap_clients=int(data.get("wifi_ap_clients", 0)),
                extra={k: v for k, v in data.items() if k not in known},
            )
        except (TypeError, ValueError) as e:
            raise TransportError(Endpoints.SYSTEM_STATUS, f"Malformed system status: {e}") from e

    async def scan_networks(self) -> list[AccessPoint]:
        response = await self.call(Endpoints.WIFI_SCAN)
        if not isinstance(response.data, list):
            raise TransportError(Endpoints.WIFI_SCAN, "Malformed scan result: expected a list")
        networks = []
        for entry in response.data:
            if not isinstance(entry, dict):
                continue
            try:
                networks.append(
                    AccessPoint(
                        ssid=str(entry.get("ssid", "")), rssi=int(entry.get("rssi", 0)), auth=str(entry.get("auth", ""))
                    )
                )
            except (TypeError, ValueError):
                self.logger.debug(f"Skipping malformed scan entry: {entry!r}")
        return networks

    # --- Firmware upload ---

    async def read_firmware(self, source: bytes | bytearray | memoryview | BinaryIO) -> tuple[bytes, int | None]:
        """
        Read a firmware image into memory.

        Returns:
            tuple: (image bytes, size known before reading or SIZE_UNKNOWN)

        Raises:
            OSError: If the file cannot be read
        """
        if isinstance(source, bytes | bytearray | memoryview):
            body = bytes(source)
            return body, len(body)

        total = _stream_size(source)
        chunks = []
        while True:
            chunk = source.read(self.READ_CHUNK_SIZE)
            if not chunk:
                break
            chunks.append(chunk)
            await Scheduler.yield_control()
        return b"".join(chunks), total

    async def upload_firmware(
        self,
        source: bytes | bytearray | memoryview | BinaryIO,
        progress_callback: ProgressCallback | None = None,
    ) -> DeviceResponse:
        """
        Send a firmware image as a raw application/octet-stream body.

        The progress callback receives ``(bytes_sent, bytes_total)`` when the
        body is handed to the transport and when the device acknowledges it.
        ``bytes_total`` is SIZE_UNKNOWN when the source size could not be
        computed up front.

        Raises:
            OSError: If the firmware source cannot be read
            TransportError: If the upload exchange fails
        """
        body, total = await self.read_firmware(source)

        def notify(sent: int) -> None:
            if progress_callback is None:
                return
            try:
                progress_callback(sent, total)
            except Exception as e:
                self.logger.warning(f"Progress callback error: {e}")

        self.logger.info(f"Uploading firmware ({len(body)} bytes)")
        notify(0)
        response = await self.call(Endpoints.OTA_UPDATE, payload=body, content_type=BINARY_CONTENT_TYPE)
        notify(len(body))
        return response


def _read_content(response: Any) -> bytes:
    return response.content or b""


def _stream_size(stream: Any) -> int | None:
    """Bytes remaining in a binary stream, or SIZE_UNKNOWN."""
    try:
        if stream.seekable():
            position = stream.tell()
            end = stream.seek(0, os.SEEK_END)
            stream.seek(position)
            return end - position
    except (AttributeError, OSError, ValueError):
        pass
    return SIZE_UNKNOWN
