"""
SessionManager - one coordinator session against one device.

Wires the endpoint client, display sink, timer registry and the two state
machines together, and exposes the user actions. A reload ends the session:
every timer is cancelled before the display is asked to reload, and the
entry point starts a fresh session afterwards.
"""

from core.errors import TransportError
from core.logging_helper import logger
from core.scheduler import Scheduler
from managers.manager_base import ManagerBase
from managers.ota_manager import FirmwareFile, OtaManager
from managers.polling_manager import PollingManager
from managers.wifi_connect_manager import WifiConnectManager
from services.device_client import AccessPoint, DeviceClient, SystemStatus
from services.display import DisplaySink, Regions


class SessionManager(ManagerBase):
    """Device-session coordinator."""

    def __init__(
        self,
        client: DeviceClient,
        display: DisplaySink,
        scheduler: Scheduler | None = None,
        wifi_max_polls: int | None = None,
    ) -> None:
        super().__init__(scheduler)
        self.logger = logger("devpanel.session")
        self.client = client
        self.display = display
        self.polling = PollingManager(client, display, scheduler=self.scheduler)
        self.ota = OtaManager(client, display, self.polling, reload=self.reload)
        self.wifi = WifiConnectManager(client, display, self.polling, reload=self.reload, max_polls=wifi_max_polls)
        self.system_status: SystemStatus | None = None
        self.started = False

    def start(self) -> None:
        """Begin polling; the first requests are staggered."""
        if self.started:
            self.logger.debug("Session already started")
            return
        self.logger.info(f"Starting session against {self.client.base_url}")
        self.polling.start(ota_status_query=self.ota.check_status, connect_info_query=self.wifi.refresh_connect_info)
        self.started = True

    # --- User actions ---

    def select_firmware(self, files: list[FirmwareFile]) -> FirmwareFile | None:
        return self.ota.describe_file(files)

    async def upload_firmware(self, files: list[FirmwareFile]) -> None:
        await self.ota.upload(files)

    def connect_wifi(self, ssid: str, password: str) -> None:
        self.wifi.connect(ssid, password)

    def disconnect_wifi(self) -> None:
        self.wifi.disconnect()

    async def scan_networks(self) -> list[AccessPoint]:
        return await self.wifi.scan_networks()

    async def refresh_system_status(self) -> SystemStatus | None:
        """Fetch heap, uptime and version details from the device."""
        try:
            status = await self.client.get_system_status()
        except TransportError as e:
            self.logger.warning(f"System status query failed: {e}")
            return None

        self.system_status = status
        uptime_min = status.uptime_seconds // 60
        self.display.set_text(
            Regions.SYSTEM_STATUS,
            f"Firmware {status.firmware_version} ({status.compile_date} {status.compile_time}), "
            f"up {uptime_min} min, heap {status.heap_free} B free (min {status.heap_min} B), "
            f"{status.wifi_ap_clients} AP client(s), station {'connected' if status.wifi_sta_connected else 'disconnected'}",
        )
        return status

    # --- Lifecycle ---

    def reload(self) -> None:
        """End this session: stop every timer, then reload the display."""
        self.logger.info("Session reload")
        self.shutdown()
        self.display.reload()

    def shutdown(self) -> None:
        self.ota.shutdown()
        self.wifi.shutdown()
        self.polling.stop()
        super().shutdown()
        self.started = False
