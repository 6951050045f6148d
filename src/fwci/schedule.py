import json
import uuid
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple
from urllib.parse import quote

import click

from .schemas import Credentials, FirmwareCIJobDocument

logger = logging.getLogger(__name__)

REPORT_EXPIRY = timedelta(hours=1)
IN_PROGRESS_TIMEOUT_MINUTES = 60
SAFE_CHARS = "!*'()"


class CredentialsFileError(ValueError):
    pass


class ScheduledJob(NamedTuple):
    job_id: str
    document: FirmwareCIJobDocument


def query_string(fields: Dict[str, str]) -> str:
    """Encode form fields the same way encodeURIComponent would"""
    return "&".join(
        f"{quote(str(key), safe=SAFE_CHARS)}={quote(str(value), safe=SAFE_CHARS)}"
        for key, value in fields.items()
    )


def report_url(bucket_name: str, region: str, job_id: str) -> str:
    return f"https://{bucket_name}.s3.{region}.amazonaws.com/{job_id}.json"


def isoformat(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def load_credentials(certificate_json: str, sec_tag: int) -> Credentials:
    """Read the certificate bundle; its contents are passed through as-is"""
    try:
        with open(certificate_json, "r", encoding="utf-8") as bundle_file:
            bundle = json.load(bundle_file)
    except OSError as e:
        raise CredentialsFileError(f"Cannot read certificate file {certificate_json}: {e}") from e
    except json.JSONDecodeError as e:
        raise CredentialsFileError(f"Certificate file {certificate_json} is not valid JSON: {e}") from e

    if not isinstance(bundle, dict):
        raise CredentialsFileError(f"Certificate file {certificate_json} must contain a JSON object")

    return Credentials(
        sec_tag=sec_tag,
        private_key=bundle.get("privateKey"),
        client_cert=bundle.get("clientCert"),
        ca_cert=bundle.get("caCert"),
    )


def create_presigned_post(s3, bucket_name: str, key: str) -> Tuple[str, Dict[str, str]]:
    presigned = s3.generate_presigned_post(
        Bucket=bucket_name,
        Key=key,
        Fields={"key": key},
        ExpiresIn=int(REPORT_EXPIRY.total_seconds()),
    )
    return presigned["url"], presigned["fields"]


def build_job_document(
    s3,
    *,
    firmware_url: str,
    target: str,
    network: str,
    sec_tag: int,
    bucket_name: str,
    region: str,
    certificate_json: Optional[str] = None,
    credentials: Optional[Credentials] = None,
    job_id: Optional[str] = None,
    timeout_in_minutes: Optional[int] = None,
    abort_on: Optional[List[str]] = None,
    end_on: Optional[List[str]] = None,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> ScheduledJob:
    job_id = job_id or str(uuid.uuid4())

    # Read before talking to AWS so a bad bundle never produces a job
    if credentials is None:
        credentials = load_credentials(certificate_json, sec_tag)

    click.echo()
    click.echo(f"{click.style('  Job ID:    ', fg='bright_black')} {click.style(job_id, fg='yellow')}")

    key = f"{job_id}.json"
    url, fields = create_presigned_post(s3, bucket_name, key)
    logger.debug(f"Presigned report upload for {key} at {url}")

    document = FirmwareCIJobDocument(
        report_publish_url=f"{url}?{query_string(fields)}",
        report_url=report_url(bucket_name, region, job_id),
        fw=firmware_url,
        target=f"{target}:{network}",
        expires=isoformat(now() + REPORT_EXPIRY),
        credentials=credentials,
        timeout_in_minutes=timeout_in_minutes,
        abort_on=list(abort_on) if abort_on else None,
        end_on=list(end_on) if end_on else None,
    )
    return ScheduledJob(job_id, document)


def submit_job(iot, job_id: str, document: FirmwareCIJobDocument, *, target: str, network: str, device_arn: str):
    response = iot.create_job(
        jobId=job_id,
        targets=[device_arn],
        document=document.to_json(),
        description=f"Firmware CI job for a {target} with {network}",
        targetSelection="SNAPSHOT",
        timeoutConfig={"inProgressTimeoutInMinutes": IN_PROGRESS_TIMEOUT_MINUTES},
    )
    logger.info(f"Job {job_id} created for {device_arn}")
    return response


def schedule(iot, s3, *, device_arn: str, **options) -> ScheduledJob:
    scheduled = build_job_document(s3, **options)
    submit_job(
        iot,
        scheduled.job_id,
        scheduled.document,
        target=options["target"],
        network=options["network"],
        device_arn=device_arn,
    )
    return scheduled
