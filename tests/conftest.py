import json
from unittest.mock import Mock

import pytest

PRESIGNED_URL = "https://ci-reports.s3.amazonaws.com/"


@pytest.fixture
def certificate_file(tmp_path):
    path = tmp_path / "certificate.json"
    path.write_text(json.dumps({"caCert": "A", "clientCert": "B", "privateKey": "C"}))
    return str(path)


@pytest.fixture
def s3():
    client = Mock()

    def generate_presigned_post(Bucket, Key, Fields, ExpiresIn):
        return {
            "url": PRESIGNED_URL,
            "fields": {
                "key": Key,
                "AWSAccessKeyId": "AKIDEXAMPLE",
                "policy": "eyJjb25kaXRpb25zIjpbXX0=",
                "signature": "a/b+c=",
            },
        }

    client.generate_presigned_post.side_effect = generate_presigned_post
    return client


@pytest.fixture
def iot():
    client = Mock()
    client.create_job.return_value = {"jobArn": "arn:aws:iot:us-east-1:123456789012:job/x", "jobId": "x"}
    return client


@pytest.fixture
def aws_credentials(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
