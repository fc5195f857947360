"""
OtaManager - firmware upload, flash status tracking and reboot countdown.

States:
    Idle -> Uploading -> Complete | Error
    Complete -> (10 one-second ticks) -> reload

The status endpoint reports a tri-state code:
    0  informational only (firmware version refresh)
    1  flashing complete, start the reboot countdown
    -1 flashing failed

Status queries are one-shot: one after the upload is submitted and one after
each progress event. Failures of the status query itself are ignored; the
next query may succeed and the page's main content is already loaded.
"""

import contextlib
import os
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any, BinaryIO

from core.errors import TransportError, ValidationError
from core.logging_helper import logger
from core.scheduler import Scheduler
from managers.manager_base import ManagerBase
from managers.polling_manager import PollingManager, PollPurpose
from services.device_client import SIZE_UNKNOWN, DeviceClient
from services.display import DisplaySink, Regions

OTA_STATUS_INFO = 0
OTA_STATUS_COMPLETE = 1
OTA_STATUS_FAILED = -1

SELECT_FILE_MESSAGE = "Select A File First"
SIZE_UNKNOWN_MESSAGE = "total size is unknown"
UPLOAD_ERROR_MESSAGE = "!!! Upload Error !!!"
FILE_READ_ERROR_MESSAGE = "!!! File Read Error !!!"


class OtaStatus(Enum):
    IDLE = "Idle"
    UPLOADING = "Uploading"
    COMPLETE = "Complete"
    ERROR = "Error"


@dataclass(frozen=True)
class OtaSession:
    """
    Tagged OTA state. ``countdown_seconds`` is carried only by Complete.

    Use the classmethod constructors; any other combination is rejected.
    """

    status: OtaStatus = OtaStatus.IDLE
    countdown_seconds: int | None = None

    def __post_init__(self) -> None:
        if (self.status is OtaStatus.COMPLETE) != (self.countdown_seconds is not None):
            raise ValueError(f"countdown_seconds is only valid in Complete (got {self.status.value}, {self.countdown_seconds})")

    @classmethod
    def idle(cls) -> "OtaSession":
        return cls(OtaStatus.IDLE)

    @classmethod
    def uploading(cls) -> "OtaSession":
        return cls(OtaStatus.UPLOADING)

    @classmethod
    def complete(cls, countdown_seconds: int) -> "OtaSession":
        return cls(OtaStatus.COMPLETE, countdown_seconds)

    @classmethod
    def error(cls) -> "OtaSession":
        return cls(OtaStatus.ERROR)


@dataclass
class FirmwareFile:
    """A firmware image picked by the user: in-memory bytes or a path on disk."""

    name: str
    size: int
    data: bytes | BinaryIO | None = None
    path: str | None = None

    @classmethod
    def from_path(cls, path: str) -> "FirmwareFile":
        return cls(name=os.path.basename(path), size=os.path.getsize(path), path=path)

    @contextlib.contextmanager
    def open(self) -> Iterator[Any]:
        """Yield something DeviceClient.upload_firmware accepts."""
        if self.path is not None:
            with open(self.path, "rb") as f:
                yield f
        elif self.data is not None:
            yield self.data
        else:
            raise OSError(f"No content for firmware file '{self.name}'")


class OtaManager(ManagerBase):
    """State machine for one firmware update attempt per session."""

    REBOOT_COUNTDOWN_SECONDS = 10
    COUNTDOWN_TICK_MS = 1000

    def __init__(
        self,
        client: DeviceClient,
        display: DisplaySink,
        polling: PollingManager,
        scheduler: Scheduler | None = None,
        reload: Callable[[], None] | None = None,
    ) -> None:
        super().__init__(scheduler or polling.scheduler)
        self.logger = logger("devpanel.ota")
        self.client = client
        self.display = display
        self.polling = polling
        self._reload = reload or display.reload
        self.session = OtaSession.idle()

    @property
    def status(self) -> OtaStatus:
        return self.session.status

    @property
    def countdown_seconds(self) -> int | None:
        return self.session.countdown_seconds

    def _set_session(self, session: OtaSession) -> None:
        if session.status is not self.session.status:
            self.logger.info(f"OTA state {self.session.status.value} -> {session.status.value}")
        self.session = session

    # --- File selection ---

    def describe_file(self, files: list[FirmwareFile]) -> FirmwareFile | None:
        """Show the name and size of the selected file, if exactly one is selected."""
        if len(files) != 1:
            return None
        firmware = files[0]
        self.display.set_html(Regions.FILE_INFO, f"<h4>File: {firmware.name}<br>Size: {firmware.size} bytes</h4>")
        return firmware

    # --- Upload ---

    async def upload(self, files: list[FirmwareFile]) -> None:
        """
        Upload the single selected firmware image.

        Raises:
            ValidationError: NO_FILE_SELECTED when zero or several files are selected
        """
        if len(files) != 1:
            self.display.alert(SELECT_FILE_MESSAGE)
            raise ValidationError(ValidationError.NO_FILE_SELECTED, [SELECT_FILE_MESSAGE])

        if self.session.status is OtaStatus.COMPLETE:
            self.logger.warning("Update already complete, waiting for reload; upload ignored")
            return

        firmware = files[0]
        self._set_session(OtaSession.uploading())
        self.display.set_html(Regions.OTA_UPDATE_STATUS, f"Uploading {firmware.name}, Firmware Update in Progress...")

        try:
            with firmware.open() as source:
                await self.client.upload_firmware(source, progress_callback=self._on_progress)
        except OSError as e:
            self.logger.error(f"Could not read firmware file '{firmware.name}': {e}")
            self._set_session(OtaSession.error())
            self.display.set_html(Regions.OTA_UPDATE_STATUS, FILE_READ_ERROR_MESSAGE)
            return
        except TransportError as e:
            # The device reports the outcome through the status endpoint
            self.logger.warning(f"Firmware upload exchange failed: {e}")

        await self.check_status()

    def _on_progress(self, bytes_sent: int, bytes_total: int | None) -> None:
        if bytes_total is SIZE_UNKNOWN:
            self.display.alert(SIZE_UNKNOWN_MESSAGE)
            return
        self.logger.debug(f"Upload progress {bytes_sent}/{bytes_total} bytes")
        self._track_task_handle(self.scheduler.schedule_now(self.check_status, priority=20, name="OTA Status Query"))

    # --- Status ---

    async def check_status(self) -> None:
        """Query flash status once and apply the reported code."""
        try:
            report = await self.client.get_ota_status()
        except TransportError as e:
            self.logger.debug(f"OTA status query failed, ignoring: {e}")
            return

        self.display.set_text(Regions.LATEST_FIRMWARE, report.firmware_version)

        if report.code == OTA_STATUS_COMPLETE:
            self._enter_complete()
        elif report.code == OTA_STATUS_FAILED:
            self._enter_error()

    def _enter_complete(self) -> None:
        if self.session.status is OtaStatus.COMPLETE:
            return
        self._set_session(OtaSession.complete(self.REBOOT_COUNTDOWN_SECONDS))
        self._show_countdown()
        self.polling.start_repeating(
            PollPurpose.OTA_COUNTDOWN, self.COUNTDOWN_TICK_MS, self._countdown_tick, immediate=False
        )

    def _enter_error(self) -> None:
        if self.session.status is OtaStatus.COMPLETE:
            self.logger.warning("Failure reported after completion; ignoring")
            return
        self._set_session(OtaSession.error())
        self.display.set_html(Regions.OTA_UPDATE_STATUS, UPLOAD_ERROR_MESSAGE)

    # --- Reboot countdown ---

    def _show_countdown(self) -> None:
        self.display.set_html(
            Regions.OTA_UPDATE_STATUS,
            "OTA Firmware Update Complete. This page will close shortly, "
            f"Rebooting in: {self.session.countdown_seconds}",
        )

    async def _countdown_tick(self) -> None:
        if self.session.status is not OtaStatus.COMPLETE:
            self.polling.stop_repeating(PollPurpose.OTA_COUNTDOWN)
            return

        remaining = self.session.countdown_seconds - 1
        self._set_session(OtaSession.complete(remaining))
        if remaining <= 0:
            self.polling.stop_repeating(PollPurpose.OTA_COUNTDOWN)
            self.logger.info("Reboot countdown finished, reloading")
            self._reload()
            return
        self._show_countdown()

    def shutdown(self) -> None:
        self.polling.stop_repeating(PollPurpose.OTA_COUNTDOWN)
        super().shutdown()
