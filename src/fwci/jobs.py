import json
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from .models import JobExecutionStatus, JobStatus

logger = logging.getLogger(__name__)

DEFAULT_WAIT_TIMEOUT_MINUTES = 60
DEFAULT_POLL_INTERVAL = 10
TIMEOUT = 30


class JobTimeoutError(TimeoutError):
    pass


class JobFailedError(RuntimeError):
    pass


@dataclass
class JobOutcome:
    job_id: str
    status: JobStatus
    executions: Dict[str, JobExecutionStatus] = field(default_factory=dict)
    report: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return bool(self.executions) and all(
            status == JobExecutionStatus.SUCCEEDED for status in self.executions.values()
        )

    @property
    def failed_executions(self) -> List[str]:
        return [
            f"{thing_arn}: {status.value}"
            for thing_arn, status in self.executions.items()
            if status != JobExecutionStatus.SUCCEEDED
        ]


def get_job_status(iot, job_id: str) -> JobStatus:
    response = iot.describe_job(jobId=job_id)
    return JobStatus(response["job"]["status"])


def get_job_executions(iot, job_id: str) -> Dict[str, JobExecutionStatus]:
    executions = {}
    paginator = iot.get_paginator("list_job_executions_for_job")
    for page in paginator.paginate(jobId=job_id):
        for summary in page.get("executionSummaries", []):
            executions[summary["thingArn"]] = JobExecutionStatus(summary["jobExecutionSummary"]["status"])
    return executions


def fetch_report(iot, job_id: str) -> Optional[Dict[str, Any]]:
    """Download the report the device published, if it has done so"""
    document = json.loads(iot.get_job_document(jobId=job_id)["document"])
    url = document.get("reportUrl")
    if not url:
        logger.warning(f"Job {job_id} document has no reportUrl")
        return None

    response = requests.get(url, timeout=TIMEOUT)
    if response.status_code in (403, 404):
        logger.info(f"No report at {url} (HTTP {response.status_code})")
        return None
    response.raise_for_status()
    return response.json()


def wait_for_job(
    iot,
    job_id: str,
    *,
    timeout: int = DEFAULT_WAIT_TIMEOUT_MINUTES,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    on_status: Optional[Callable[[JobStatus], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> JobOutcome:
    """Poll a job until it reaches a terminal status.

    ``timeout`` is in minutes. ``on_status`` is called whenever the reported
    status differs from the previous poll.
    """
    start_time = clock()
    last_status = None

    while True:
        status = get_job_status(iot, job_id)
        if status != last_status:
            logger.info(f"Job {job_id} is {status.value}")
            if on_status:
                on_status(status)
            last_status = status

        if status.is_terminal:
            break

        if clock() - start_time >= timeout * 60:
            raise JobTimeoutError(f"Timeout waiting for job {job_id} after {timeout} minutes")

        sleep(poll_interval)

    return JobOutcome(
        job_id=job_id,
        status=status,
        executions=get_job_executions(iot, job_id),
        report=fetch_report(iot, job_id),
    )


def cancel_job(iot, job_id: str, *, force: bool = False, comment: Optional[str] = None) -> Dict[str, Any]:
    params = {"jobId": job_id, "force": force}
    if comment:
        params["comment"] = comment

    response = iot.cancel_job(**params)
    logger.info(f"Job {job_id} cancelled")
    return response
