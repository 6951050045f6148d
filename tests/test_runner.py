"""
Tests for the local firmware runner.
"""

import subprocess
from unittest.mock import Mock, patch

import pytest

from fwci.runner import (
    DeviceConnection,
    DeviceRunError,
    flash,
    provision_credentials,
    publish_report,
    run_firmware,
    run_job_document,
    watch_log,
)
from fwci.schemas import Credentials, FirmwareCIJobDocument, RunReport


class FakePort:
    """Serial port double that answers OK to every write"""

    def __init__(self, lines=(), reply=b"OK\r\n"):
        self.lines = [line.encode("utf-8") + b"\r\n" for line in lines]
        self.reply = reply
        self.written = []
        self.closed = False

    def write(self, data):
        self.written.append(data.decode("utf-8"))
        self.lines.append(self.reply)

    def readline(self):
        return self.lines.pop(0) if self.lines else b""

    def close(self):
        self.closed = True


def ticking(step=1):
    ticks = iter(range(0, 100000, step))
    return lambda: next(ticks)


class TestDeviceConnection:
    """Tests for DeviceConnection."""

    def test_send_at_collects_response(self):
        port = FakePort()
        port.lines = [b"+CGSN: 123\r\n"]
        connection = DeviceConnection(port, clock=ticking())

        assert connection.send_at("AT+CGSN=1") == ["+CGSN: 123"]
        assert port.written == ["AT+CGSN=1\r\n"]

    def test_send_at_error(self):
        connection = DeviceConnection(FakePort(reply=b"ERROR\r\n"), clock=ticking())

        with pytest.raises(DeviceRunError, match="AT command failed"):
            connection.send_at("AT+BOGUS")

    def test_send_at_timeout(self):
        connection = DeviceConnection(FakePort(reply=b""), clock=ticking(5))

        with pytest.raises(DeviceRunError, match="No response"):
            connection.send_at("AT")

    def test_provision_credentials(self):
        port = FakePort()
        connection = DeviceConnection(port, clock=ticking())

        provision_credentials(connection, Credentials(sec_tag=42, ca_cert="A", client_cert="B", private_key="C"))

        assert port.written == [
            "AT+CFUN=4\r\n",
            'AT%CMNG=0,42,0,"A"\r\n',
            'AT%CMNG=0,42,1,"B"\r\n',
            'AT%CMNG=0,42,2,"C"\r\n',
        ]


class TestWatchLog:
    """Tests for watch_log."""

    def test_stops_on_end_pattern(self):
        connection = DeviceConnection(FakePort(["booting", "TESTS PASSED", "never read"]))

        report = watch_log(connection, timeout=1, end_on=["PASSED"], clock=ticking())

        assert report.end
        assert not report.abort and not report.timeout
        assert report.device_log == ["booting", "TESTS PASSED"]

    def test_stops_on_abort_pattern(self):
        connection = DeviceConnection(FakePort(["booting", "FATAL ERROR"]))

        report = watch_log(connection, timeout=1, abort_on=["FATAL"], end_on=["PASSED"], clock=ticking())

        assert report.abort
        assert not report.end

    def test_times_out(self):
        connection = DeviceConnection(FakePort(["booting"]))

        report = watch_log(connection, timeout=1, end_on=["PASSED"], clock=ticking(30))

        assert report.timeout
        assert report.device_log == ["booting"]


class TestFlash:
    """Tests for flash."""

    def test_collects_output(self):
        result = subprocess.CompletedProcess([], 0, stdout="Programming\nVerified OK\n", stderr="")
        flash_log = []

        with patch("fwci.runner.subprocess.run", return_value=result) as mock_run:
            flash("fw.hex", flash_log)

        assert "--program" in mock_run.call_args.args[0]
        assert flash_log == ["Programming", "Verified OK"]

    def test_failure_raises(self):
        result = subprocess.CompletedProcess([], 33, stdout="", stderr="ERROR: no debugger\n")

        with patch("fwci.runner.subprocess.run", return_value=result):
            with pytest.raises(DeviceRunError, match="exit code 33"):
                flash("fw.hex", [])

    def test_missing_tool(self):
        with patch("fwci.runner.subprocess.run", side_effect=FileNotFoundError("nrfjprog")):
            with pytest.raises(DeviceRunError, match="Cannot run"):
                flash("fw.hex", [])


class TestRunFirmware:
    """Tests for run_firmware and run_job_document."""

    def test_runs_local_hex(self, tmp_path):
        hexfile = tmp_path / "fw.hex"
        hexfile.write_text(":00000001FF\n")
        port = FakePort(["done"])

        with patch("fwci.runner.flash") as mock_flash:
            report = run_firmware(
                firmware=str(hexfile),
                device=str(tmp_path / "ttyTEST0"),
                end_on=["done"],
                connect=lambda device, baudrate: DeviceConnection(port),
                clock=ticking(),
            )

        mock_flash.assert_called_once_with(str(hexfile), [])
        assert report.end
        assert port.closed

    def test_provisions_credentials_with_at_host(self, tmp_path):
        hexfile = tmp_path / "fw.hex"
        hexfile.write_text(":00000001FF\n")
        port = FakePort()

        with patch("fwci.runner.flash") as mock_flash:
            run_firmware(
                firmware=str(hexfile),
                device=str(tmp_path / "ttyTEST1"),
                credentials=Credentials(sec_tag=1, ca_cert="A"),
                at_host="at_host.hex",
                timeout=1,
                connect=lambda device, baudrate: DeviceConnection(port, clock=ticking()),
                clock=ticking(30),
            )

        assert [c.args[0] for c in mock_flash.call_args_list] == ["at_host.hex", str(hexfile)]
        assert 'AT%CMNG=0,1,0,"A"\r\n' in port.written

    def test_credentials_need_at_host(self, tmp_path):
        with pytest.raises(DeviceRunError, match="AT host"):
            run_firmware(firmware="fw.hex", credentials=Credentials(sec_tag=1))

    def test_missing_firmware_file(self, tmp_path):
        with pytest.raises(DeviceRunError, match="not found"):
            run_firmware(
                firmware=str(tmp_path / "missing.hex"),
                device=str(tmp_path / "ttyTEST2"),
                connect=Mock(),
            )

    def test_run_job_document(self):
        document = FirmwareCIJobDocument(
            report_publish_url="https://bucket.s3.amazonaws.com/?key=job-9.json",
            report_url="https://bucket.s3.us-east-1.amazonaws.com/job-9.json",
            fw="https://example.com/fw.hex",
            target="nrf9160dk_nrf9160ns:ltem",
            expires="2024-01-01T01:00:00.000Z",
            credentials=Credentials(sec_tag=42, ca_cert="A"),
            end_on=["PASSED"],
        )

        with patch("fwci.runner.run_firmware", return_value=RunReport()) as mock_run:
            run_job_document(document, device="/dev/ttyACM1")

        kwargs = mock_run.call_args.kwargs
        assert kwargs["job_id"] == "job-9"
        assert kwargs["credentials"] is None
        assert kwargs["end_on"] == ["PASSED"]
        assert kwargs["timeout"] == 2
        assert kwargs["device"] == "/dev/ttyACM1"


class TestPublishReport:
    """Tests for publish_report."""

    def test_posts_presigned_form(self):
        report = RunReport(job_id="job-9", end=True, device_log=["PASSED"])
        url = "https://bucket.s3.amazonaws.com/?key=job-9.json&policy=abc%3D&signature=x%2By"

        with patch("fwci.runner.requests.post") as mock_post:
            publish_report(report, url)

        args, kwargs = mock_post.call_args
        assert args == ("https://bucket.s3.amazonaws.com/",)
        assert kwargs["data"] == {"key": "job-9.json", "policy": "abc=", "signature": "x+y"}
        filename, body, content_type = kwargs["files"]["file"]
        assert filename == "job-9.json"
        assert '"deviceLog":["PASSED"]' in body
        mock_post.return_value.raise_for_status.assert_called_once()
