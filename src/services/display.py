"""
Display sinks for the device panel.

The coordinator writes plain text or HTML fragments into named regions and
never reads them back. A sink also shows blocking alerts and performs the
full reload that ends a session.
"""

from collections.abc import Callable

from core.logging_helper import logger


class Regions:
    """Named display regions."""

    AP_SSID = "ap_ssid"
    LATEST_FIRMWARE = "latest_firmware"
    OTA_UPDATE_STATUS = "ota_update_status"
    FILE_INFO = "file_info"
    TEMPERATURE = "temperature_reading"
    HUMIDITY = "humidity_reading"
    LOCAL_TIME = "local_time"
    WIFI_CONNECT_STATUS = "wifi_connect_status"
    CREDENTIAL_ERRORS = "wifi_connect_credentials_errors"
    CONNECTED_AP_LABEL = "connected_ap_label"
    CONNECTED_AP = "connected_ap"
    IP_ADDRESS_LABEL = "ip_address_label"
    IP_ADDRESS = "wifi_connect_ip"
    NETMASK_LABEL = "netmask_label"
    NETMASK = "wifi_connect_netmask"
    GATEWAY_LABEL = "gateway_label"
    GATEWAY = "wifi_connect_gw"
    DISCONNECT_BUTTON = "disconnect_wifi"
    WIFI_SCAN_RESULTS = "wifi_scan_results"
    SYSTEM_STATUS = "system_status"


class DisplaySink:
    """Interface every display implementation provides."""

    def set_text(self, region: str, text: str) -> None:
        raise NotImplementedError

    def set_html(self, region: str, html: str) -> None:
        raise NotImplementedError

    def show(self, region: str) -> None:
        raise NotImplementedError

    def alert(self, message: str) -> None:
        raise NotImplementedError

    def reload(self) -> None:
        raise NotImplementedError


class ConsoleDisplay(DisplaySink):
    """
    Display that keeps the latest value of every region and logs changes.

    Used when the coordinator runs headless from the command line. ``reload``
    delegates to an optional callback so the entry point can restart the
    session.
    """

    def __init__(self, on_reload: Callable[[], None] | None = None) -> None:
        self.logger = logger("devpanel.display")
        self.regions: dict[str, str] = {}
        self.visible: set[str] = set()
        self.alerts: list[str] = []
        self.reload_count = 0
        self._on_reload = on_reload

    def set_text(self, region: str, text: str) -> None:
        if self.regions.get(region) != text:
            self.logger.info(f"{region}: {text}")
        self.regions[region] = text

    def set_html(self, region: str, html: str) -> None:
        if self.regions.get(region) != html:
            self.logger.info(f"{region}: {html}")
        self.regions[region] = html

    def show(self, region: str) -> None:
        self.visible.add(region)

    def alert(self, message: str) -> None:
        self.logger.warning(f"ALERT: {message}")
        self.alerts.append(message)

    def reload(self) -> None:
        self.reload_count += 1
        self.logger.info("Reloading session")
        if self._on_reload is not None:
            self._on_reload()
