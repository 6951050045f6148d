import sys
import logging

import click
from dotenv import load_dotenv

from . import aws
from .config import Config, configure_logging
from .jobs import DEFAULT_POLL_INTERVAL, DEFAULT_WAIT_TIMEOUT_MINUTES, JobFailedError, cancel_job, wait_for_job
from .models import JobStatus, Network
from .runner import (
    DEFAULT_BAUDRATE,
    DEFAULT_DEVICE,
    DEFAULT_RUN_TIMEOUT_MINUTES,
    load_job_document,
    publish_report,
    run_firmware,
    run_job_document,
)
from .schedule import load_credentials, schedule

logger = logging.getLogger(__name__)

STATUS_COLORS = {
    JobStatus.SCHEDULED: "yellow",
    JobStatus.IN_PROGRESS: "blue",
    JobStatus.COMPLETED: "green",
    JobStatus.CANCELED: "red",
    JobStatus.DELETION_IN_PROGRESS: "red",
}


def error_marker():
    return click.style(" ERROR ", fg="red", reverse=True)


def fail(command_name, error):
    logger.debug(f"{command_name} failed", exc_info=error)
    click.echo(f"{error_marker()} {click.style(f'{command_name} failed!', fg='red')}", err=True)
    click.echo(f"{error_marker()} {click.style(str(error), fg='red')}", err=True)
    sys.exit(1)


def echo_report(report):
    click.echo(f"Timeout: {report.timeout}  Abort: {report.abort}  End: {report.end}")
    for line in report.device_log:
        click.echo(f"  {line}")


@click.command(name="schedule", epilog="Schedules a firmware CI job on the CI device.")
@click.option("--firmware", "-f", required=True, help="URL of the firmware to flash")
@click.option("--certificate-json", "-c", required=True, type=click.Path(dir_okay=False),
              help="JSON file with caCert, clientCert and privateKey")
@click.option("--target", "-t", required=True, help="Board the firmware is built for")
@click.option("--network", "-n", default=Network.LTEM.value,
              type=click.Choice([network.value for network in Network]),
              help="Network the device connects to")
@click.option("--sec-tag", "-s", default=42, type=int, help="Security tag to store the credentials at")
@click.option("--job-id", "-i", help="Job ID to use (default: random UUID)")
@click.option("--timeout", type=int, help="Job timeout in minutes")
@click.option("--abort-on", "-a", multiple=True, help="Abort the job when the device logs this text")
@click.option("--end-on", "-e", multiple=True, help="End the job when the device logs this text")
@click.pass_obj
def schedule_command(config, firmware, certificate_json, target, network, sec_tag, job_id, timeout, abort_on, end_on):
    """Schedule a firmware CI job"""
    try:
        config.require_scheduling()
        # Bundle is checked before any AWS call
        credentials = load_credentials(certificate_json, sec_tag)
        device_arn = config.device_arn(aws.get_account_id(config.region))

        job_id, document = schedule(
            aws.iot_client(config.region),
            aws.s3_client(config.region),
            device_arn=device_arn,
            firmware_url=firmware,
            credentials=credentials,
            target=target,
            network=network,
            sec_tag=sec_tag,
            bucket_name=config.bucket_name,
            region=config.region,
            job_id=job_id,
            timeout_in_minutes=timeout,
            abort_on=list(abort_on),
            end_on=list(end_on),
        )

        click.echo(f"{click.style('  Report:    ', fg='bright_black')} {click.style(document.report_url, fg='blue')}")
        click.echo()
        click.echo(f"{click.style('Job', fg='green')} {click.style(job_id, fg='bright_blue')} {click.style('created.', fg='green')}")
        click.echo()
        click.echo(click.style("You can observe the job execution using:", fg="green"))
        click.echo(f"{click.style('fwci wait', fg='bright_green')} {click.style(job_id, fg='bright_blue')}")

    except Exception as e:
        fail("schedule", e)


@click.command(name="wait", epilog="Waits until the job has finished and prints its report.")
@click.argument("job_id")
@click.option("--timeout", default=DEFAULT_WAIT_TIMEOUT_MINUTES, help="Timeout in minutes")
@click.option("--poll-interval", default=DEFAULT_POLL_INTERVAL, help="Polling interval in seconds")
@click.pass_obj
def wait_command(config, job_id, timeout, poll_interval):
    """Wait for a job to finish"""

    def on_status(status):
        click.echo(f"Job {click.style(job_id, fg='blue')}: {click.style(status.value, fg=STATUS_COLORS[status])}")

    try:
        outcome = wait_for_job(
            aws.iot_client(config.region),
            job_id,
            timeout=timeout,
            poll_interval=poll_interval,
            on_status=on_status,
        )

        for thing_arn, status in outcome.executions.items():
            click.echo(f"  {thing_arn}: {status.value}")

        if outcome.report is not None:
            click.echo("\nReport:")
            click.echo(click.style(str(outcome.report), fg="bright_black"))
        else:
            click.echo(click.style("\nNo report has been published.", fg="yellow"))

        if not outcome.succeeded:
            raise JobFailedError(
                f"Job {job_id} ended as {outcome.status.value}: "
                + (", ".join(outcome.failed_executions) or "no executions")
            )

        click.echo(click.style(f"✓ Job {job_id} succeeded!", fg="green"))

    except Exception as e:
        fail("wait", e)


@click.command(name="cancel", epilog="Cancels a job. Devices already running it are not stopped unless forced.")
@click.argument("job_id")
@click.option("--force", is_flag=True, help="Also cancel executions that are in progress")
@click.option("--comment", help="Reason for the cancellation")
@click.pass_obj
def cancel_command(config, job_id, force, comment):
    """Cancel a job"""
    try:
        cancel_job(aws.iot_client(config.region), job_id, force=force, comment=comment)
        click.echo(click.style(f"✓ Job {job_id} cancelled.", fg="green"))
    except Exception as e:
        fail("cancel", e)


@click.command(name="run", epilog="Runs a firmware on a device connected to this machine.")
@click.option("--firmware", "-f", required=True, help="URL or path of the firmware hex file")
@click.option("--device", "-d", default=DEFAULT_DEVICE, help="Serial device of the board")
@click.option("--baudrate", default=DEFAULT_BAUDRATE, help="Serial baud rate")
@click.option("--certificate-json", "-c", type=click.Path(dir_okay=False),
              help="JSON file with caCert, clientCert and privateKey")
@click.option("--sec-tag", "-s", default=42, type=int, help="Security tag to store the credentials at")
@click.option("--at-host", type=click.Path(dir_okay=False), help="AT host hex file used to write credentials")
@click.option("--timeout", "-t", default=DEFAULT_RUN_TIMEOUT_MINUTES, help="Timeout in minutes")
@click.option("--abort-on", "-a", multiple=True, help="Abort when the device logs this text")
@click.option("--end-on", "-e", multiple=True, help="End when the device logs this text")
def run_command(firmware, device, baudrate, certificate_json, sec_tag, at_host, timeout, abort_on, end_on):
    """Run a firmware on a local device"""
    try:
        credentials = load_credentials(certificate_json, sec_tag) if certificate_json else None
        report = run_firmware(
            firmware=firmware,
            device=device,
            baudrate=baudrate,
            credentials=credentials,
            at_host=at_host,
            timeout=timeout,
            abort_on=abort_on,
            end_on=end_on,
        )
        echo_report(report)
    except Exception as e:
        fail("run", e)


@click.command(name="run-from-file", epilog="Runs a job document on a device connected to this machine.")
@click.argument("job_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--device", "-d", default=DEFAULT_DEVICE, help="Serial device of the board")
@click.option("--baudrate", default=DEFAULT_BAUDRATE, help="Serial baud rate")
@click.option("--at-host", type=click.Path(dir_okay=False), help="AT host hex file used to write credentials")
@click.option("--publish", is_flag=True, help="Upload the report to the job's reportPublishUrl")
def run_from_file_command(job_file, device, baudrate, at_host, publish):
    """Run a job document on a local device"""
    try:
        document = load_job_document(job_file)
        report = run_job_document(document, device=device, baudrate=baudrate, at_host=at_host)
        echo_report(report)

        if publish:
            publish_report(report, document.report_publish_url)
            click.echo(click.style(f"✓ Report published to {document.report_url}", fg="green"))
    except Exception as e:
        fail("run-from-file", e)


CI_COMMANDS = (schedule_command, wait_command, cancel_command)
INTERACTIVE_COMMANDS = CI_COMMANDS + (run_command, run_from_file_command)


def create_cli(is_ci: bool) -> click.Group:
    @click.group(invoke_without_command=True)
    @click.version_option(package_name="fwci")
    @click.pass_context
    def cli(ctx):
        """Firmware CI Command Line Interface"""
        if ctx.invoked_subcommand is None:
            click.echo(click.style(ctx.get_help(), fg="yellow"))
            click.echo(f"{error_marker()} {click.style('No command selected!', fg='red')}", err=True)
            ctx.exit(1)

    for command in CI_COMMANDS if is_ci else INTERACTIVE_COMMANDS:
        cli.add_command(command)
    return cli


def main():
    load_dotenv()
    configure_logging()
    config = Config.from_env()

    if config.is_ci:
        click.echo("Running on CI...", err=True)

    create_cli(config.is_ci).main(obj=config, prog_name="fwci")


if __name__ == "__main__":
    main()
