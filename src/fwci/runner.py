import os
import time
import logging
import tempfile
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence
from urllib.parse import parse_qsl

import requests
import serial
from filelock import FileLock, Timeout

from .schemas import Credentials, FirmwareCIJobDocument, RunReport

logger = logging.getLogger(__name__)

DEFAULT_DEVICE = "/dev/ttyACM0"
DEFAULT_BAUDRATE = 115200
DEFAULT_RUN_TIMEOUT_MINUTES = 2
AT_COMMAND_TIMEOUT = 10
TIMEOUT = 30

# %CMNG credential types
CREDENTIAL_TYPES = (
    ("ca_cert", 0),
    ("client_cert", 1),
    ("private_key", 2),
)


class DeviceRunError(RuntimeError):
    pass


class DeviceConnection:
    """Line oriented access to a device's serial console"""

    def __init__(self, port, clock: Callable[[], float] = time.monotonic):
        self.port = port
        self.clock = clock

    @classmethod
    def open(cls, device: str, baudrate: int = DEFAULT_BAUDRATE) -> "DeviceConnection":
        try:
            port = serial.Serial(device, baudrate=baudrate, timeout=1)
        except serial.SerialException as e:
            raise DeviceRunError(f"Cannot open {device}: {e}") from e
        logger.info(f"Connected to {device} at {baudrate} baud")
        return cls(port)

    def readline(self) -> Optional[str]:
        raw = self.port.readline()
        if not raw:
            return None
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    def send_at(self, command: str, timeout: float = AT_COMMAND_TIMEOUT) -> List[str]:
        logger.debug(f"> {command.splitlines()[0]}")
        self.port.write(f"{command}\r\n".encode("utf-8"))

        response = []
        deadline = self.clock() + timeout
        while self.clock() < deadline:
            line = self.readline()
            if line is None:
                continue
            if line == "OK":
                return response
            if line == "ERROR" or line.startswith("+CME ERROR"):
                raise DeviceRunError(f"AT command failed: {line}")
            response.append(line)

        raise DeviceRunError(f"No response to AT command within {timeout}s")

    def close(self):
        self.port.close()


def flash(hexfile: str, flash_log: List[str]):
    """Program a hex file onto the device with nrfjprog"""
    cmd = [
        os.getenv("NRFJPROG", "nrfjprog"),
        "-f", "nrf91",
        "--program", hexfile,
        "--sectorerase",
        "-r",
        "--verify",
    ]
    logger.info(f"Flashing {hexfile}")

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise DeviceRunError(f"Cannot run {cmd[0]}: {e}") from e

    flash_log.extend(line for line in result.stdout.splitlines() if line)
    flash_log.extend(line for line in result.stderr.splitlines() if line)

    if result.returncode != 0:
        raise DeviceRunError(f"Flashing {hexfile} failed with exit code {result.returncode}")


def provision_credentials(connection: DeviceConnection, credentials: Credentials):
    # Modem must be offline while the credential store is written
    connection.send_at("AT+CFUN=4")
    for attribute, credential_type in CREDENTIAL_TYPES:
        value = getattr(credentials, attribute)
        if not value:
            continue
        logger.info(f"Writing credential type {credential_type} to secTag {credentials.sec_tag}")
        connection.send_at(f'AT%CMNG=0,{credentials.sec_tag},{credential_type},"{value}"')


def watch_log(
    connection: DeviceConnection,
    *,
    timeout: int,
    abort_on: Sequence[str] = (),
    end_on: Sequence[str] = (),
    clock: Callable[[], float] = time.monotonic,
) -> RunReport:
    """Collect device output until a pattern matches or ``timeout`` minutes pass"""
    report = RunReport()
    deadline = clock() + timeout * 60

    while clock() < deadline:
        line = connection.readline()
        if line is None:
            continue
        report.device_log.append(line)

        if any(pattern in line for pattern in abort_on):
            logger.warning(f"Abort pattern matched: {line}")
            report.abort = True
            return report
        if any(pattern in line for pattern in end_on):
            logger.info(f"End pattern matched: {line}")
            report.end = True
            return report

    report.timeout = True
    return report


def download_firmware(url: str, directory: str) -> str:
    path = os.path.join(directory, "firmware.hex")
    logger.info(f"Downloading firmware from {url}")
    with requests.get(url, stream=True, timeout=TIMEOUT) as response:
        response.raise_for_status()
        with open(path, "wb") as firmware_file:
            for chunk in response.iter_content(chunk_size=65536):
                firmware_file.write(chunk)
    return path


@contextmanager
def firmware_file(firmware: str) -> Iterator[str]:
    if firmware.startswith(("http://", "https://")):
        with tempfile.TemporaryDirectory(prefix="fwci-") as directory:
            yield download_firmware(firmware, directory)
    else:
        if not os.path.exists(firmware):
            raise DeviceRunError(f"Firmware file not found: {firmware}")
        yield firmware


def device_lock(device: str) -> FileLock:
    name = Path(device).name or "device"
    return FileLock(os.path.join(tempfile.gettempdir(), f"fwci-{name}.lock"), timeout=0)


def run_firmware(
    *,
    firmware: str,
    device: str = DEFAULT_DEVICE,
    baudrate: int = DEFAULT_BAUDRATE,
    credentials: Optional[Credentials] = None,
    at_host: Optional[str] = None,
    timeout: int = DEFAULT_RUN_TIMEOUT_MINUTES,
    abort_on: Sequence[str] = (),
    end_on: Sequence[str] = (),
    job_id: Optional[str] = None,
    connect: Callable[[str, int], DeviceConnection] = DeviceConnection.open,
    clock: Callable[[], float] = time.monotonic,
) -> RunReport:
    """Flash ``firmware`` onto a locally attached device and record its output"""
    if credentials and not at_host:
        raise DeviceRunError("An AT host firmware is required to provision credentials")

    flash_log = []
    try:
        with device_lock(device), firmware_file(firmware) as hexfile:
            connection = connect(device, baudrate)
            try:
                if credentials:
                    flash(at_host, flash_log)
                    provision_credentials(connection, credentials)
                flash(hexfile, flash_log)
                report = watch_log(
                    connection,
                    timeout=timeout,
                    abort_on=abort_on,
                    end_on=end_on,
                    clock=clock,
                )
            finally:
                connection.close()
    except Timeout as e:
        raise DeviceRunError(f"Device {device} is in use by another run") from e

    report.job_id = job_id
    report.flash_log = flash_log
    return report


def load_job_document(path: str) -> FirmwareCIJobDocument:
    with open(path, "r", encoding="utf-8") as document_file:
        return FirmwareCIJobDocument.model_validate_json(document_file.read())


def job_id_from_document(document: FirmwareCIJobDocument) -> str:
    return document.report_url.rsplit("/", 1)[-1].removesuffix(".json")


def run_job_document(document: FirmwareCIJobDocument, **options) -> RunReport:
    # Credentials can only be written when an AT host firmware is available
    return run_firmware(
        firmware=document.fw,
        credentials=document.credentials if options.get("at_host") else None,
        timeout=document.timeout_in_minutes or DEFAULT_RUN_TIMEOUT_MINUTES,
        abort_on=document.abort_on or (),
        end_on=document.end_on or (),
        job_id=job_id_from_document(document),
        **options,
    )


def publish_report(report: RunReport, report_publish_url: str):
    """Upload a report through the presigned POST embedded in a job document"""
    url, _, query = report_publish_url.partition("?")
    fields = dict(parse_qsl(query, keep_blank_values=True))
    filename = f"{report.job_id}.json" if report.job_id else "report.json"

    response = requests.post(
        url,
        data=fields,
        files={"file": (filename, report.to_json(), "application/json")},
        timeout=TIMEOUT,
    )
    response.raise_for_status()
    logger.info(f"Report published to {url}")
    return response
