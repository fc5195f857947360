"""
Device panel entry point.

Loads settings, configures logging, starts a coordinator session against the
device and runs the scheduler. A reload (after a firmware update countdown or
a WiFi disconnect) starts a fresh session, like reloading the device's web
page, unless --exit-on-reload is given.
"""

import argparse
import os
import sys

from core.errors import ValidationError
from core.logging_helper import configure_logging, logger
from core.scheduler import Scheduler, TaskFatalError
from core.settings import load_settings
from managers.ota_manager import FirmwareFile
from managers.session_manager import SessionManager
from services.device_client import DeviceClient
from services.display import ConsoleDisplay


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="devpanel", description="Coordinate a session with a device control panel")
    parser.add_argument("--base-url", help="Device root URL (default: $DEVICE_BASE_URL)")
    parser.add_argument("--settings", help="settings.toml to load (default: ./settings.toml)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR or CRITICAL (default: $LOG_LEVEL)")
    parser.add_argument("--upload", metavar="FIRMWARE", help="Upload a firmware image once the session starts")
    parser.add_argument("--connect", nargs=2, metavar=("SSID", "PASSWORD"), help="Join the device to an access point")
    parser.add_argument("--disconnect", action="store_true", help="Disconnect the device from its access point")
    parser.add_argument("--scan", action="store_true", help="List access points visible to the device")
    parser.add_argument("--exit-on-reload", action="store_true", help="Stop instead of starting a new session")
    return parser


class PanelApp:
    """Holds the current session and replaces it on reload."""

    def __init__(self, args: argparse.Namespace, scheduler: Scheduler) -> None:
        self.args = args
        self.scheduler = scheduler
        self.logger = logger("devpanel")
        self.client = DeviceClient(args.base_url)
        self.display = ConsoleDisplay(on_reload=self._on_reload)
        self.session: SessionManager | None = None

    def start(self) -> None:
        self._new_session()
        self._schedule_actions()

    def _new_session(self) -> None:
        self.session = SessionManager(self.client, self.display, scheduler=self.scheduler)
        self.session.start()

    def _on_reload(self) -> None:
        if self.args.exit_on_reload:
            self.logger.info("Reload requested, exiting")
            self.scheduler.stop()
            return
        self.client.close()
        self._new_session()

    def _schedule_actions(self) -> None:
        args = self.args

        async def run_actions() -> None:
            session = self.session
            try:
                if args.scan:
                    for ap in await session.scan_networks():
                        print(f"{ap.ssid:32} {ap.rssi:5} dBm  {ap.auth}")
                if args.upload:
                    files = [FirmwareFile.from_path(args.upload)]
                    session.select_firmware(files)
                    await session.upload_firmware(files)
                if args.connect:
                    session.connect_wifi(*args.connect)
                if args.disconnect:
                    session.disconnect_wifi()
            except ValidationError as e:
                self.logger.error(f"Rejected: {e}")
            except OSError as e:
                self.logger.error(f"Cannot read firmware: {e}")

        if args.scan or args.upload or args.connect or args.disconnect:
            # After the startup stagger so actions do not compete with it
            self.scheduler.schedule_once(run_actions, delay=0.5, priority=20, name="User Actions")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    load_settings(args.settings)
    configure_logging(args.log_level or os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FILE"))
    app_log = logger("devpanel")

    scheduler = Scheduler.instance()
    app = PanelApp(args, scheduler)
    app.start()

    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        app_log.info("Interrupted")
    except TaskFatalError as e:
        app_log.critical(f"Fatal error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
