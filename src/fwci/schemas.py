from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Any, List, Optional


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class Credentials(CamelModel):
    sec_tag: int
    private_key: Optional[Any] = None
    client_cert: Optional[Any] = None
    ca_cert: Optional[Any] = None


class FirmwareCIJobDocument(CamelModel):
    report_publish_url: str
    report_url: str
    fw: str
    target: str
    expires: str
    credentials: Credentials
    timeout_in_minutes: Optional[int] = None
    abort_on: Optional[List[str]] = None
    end_on: Optional[List[str]] = None


class RunReport(CamelModel):
    job_id: Optional[str] = None
    timeout: bool = False
    abort: bool = False
    end: bool = False
    device_log: List[str] = []
    flash_log: List[str] = []
