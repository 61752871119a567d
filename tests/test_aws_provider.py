"""Tests for the boto3-backed AWS adapter, using botocore's Stubber."""
from __future__ import annotations

import io
import zipfile
from datetime import UTC, datetime
from pathlib import Path

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.stub import Stubber

from genesys.context import RunContext
from genesys.errors import ErrorKind, OperationCancelled, ProviderError
from genesys.providers.aws import AWSProvider, classify_client_error, package_code
from genesys.specs import BucketSpec

ROLE_ARN = "arn:aws:iam::123456789012:role/api-role"


@pytest.fixture
def aws_provider() -> AWSProvider:
    session = boto3.Session(
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        region_name="us-east-1",
    )
    return AWSProvider("us-east-1", session=session, call_timeout=5.0)


def _client_error(code: str, message: str = "boom", status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": message}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "Operation",
    )


@pytest.mark.parametrize(
    ("code", "kind"),
    [
        ("NoSuchBucket", ErrorKind.NOT_FOUND),
        ("InvalidVpcID.NotFound", ErrorKind.NOT_FOUND),
        ("InvalidAMIID.Malformed", ErrorKind.VALIDATION),
        ("EntityAlreadyExists", ErrorKind.ALREADY_EXISTS),
        ("InvalidGroup.Duplicate", ErrorKind.ALREADY_EXISTS),
        ("AccessDenied", ErrorKind.UNAUTHORIZED),
        ("ThrottlingException", ErrorKind.THROTTLED),
        ("SlowDown", ErrorKind.THROTTLED),
        ("ServiceUnavailable", ErrorKind.TRANSIENT),
        ("SomethingUnexpected", ErrorKind.FATAL),
    ],
)
def test_classify_client_error(code: str, kind: ErrorKind) -> None:
    """AWS error codes map onto the shared error kinds."""
    error = classify_client_error(_client_error(code), "s3:CreateBucket")
    assert error.kind is kind
    assert error.message == f"s3:CreateBucket failed ({code}): boom"
    assert isinstance(error.underlying, ClientError)


def test_role_propagation_delay_is_transient() -> None:
    """Lambda rejecting a brand-new role is retried rather than fatal."""
    exc = _client_error("InvalidParameterValueException", "The role defined for the function cannot be assumed by Lambda.")
    assert classify_client_error(exc, "lambda:CreateFunction").kind is ErrorKind.TRANSIENT
    other = _client_error("InvalidParameterValueException", "Unsupported runtime")
    assert classify_client_error(other, "lambda:CreateFunction").kind is ErrorKind.FATAL


def test_authenticate_reads_caller_identity(aws_provider: AWSProvider, run_ctx: RunContext) -> None:
    """The identity check returns account details from STS."""
    stubber = Stubber(aws_provider.client("sts"))
    stubber.add_response(
        "get_caller_identity",
        {"Account": "123456789012", "Arn": "arn:aws:iam::123456789012:user/dev", "UserId": "AIDAEXAMPLE"},
        {},
    )
    with stubber:
        identity = aws_provider.authenticate(run_ctx)

    assert identity == {
        "account": "123456789012",
        "arn": "arn:aws:iam::123456789012:user/dev",
        "user_id": "AIDAEXAMPLE",
    }
    stubber.assert_no_pending_responses()


def test_missing_bucket_is_not_found(aws_provider: AWSProvider, run_ctx: RunContext) -> None:
    """A 404 from HeadBucket means the bucket does not exist."""
    stubber = Stubber(aws_provider.client("s3"))
    stubber.add_client_error(
        "head_bucket",
        service_error_code="404",
        service_message="Not Found",
        http_status_code=404,
        expected_params={"Bucket": "missing-bucket"},
    )
    with stubber:
        assert aws_provider.storage.find_by_name(run_ctx, "missing-bucket") is None


def test_throttling_is_surfaced_as_retriable(aws_provider: AWSProvider, run_ctx: RunContext) -> None:
    """SDK throttling becomes a retriable provider error."""
    stubber = Stubber(aws_provider.client("s3"))
    stubber.add_client_error("list_buckets", service_error_code="SlowDown", http_status_code=503)
    with stubber, pytest.raises(ProviderError) as excinfo:
        aws_provider.storage.discover(run_ctx)
    assert excinfo.value.kind is ErrorKind.THROTTLED
    assert excinfo.value.retriable is True


def test_discover_buckets_sorted(aws_provider: AWSProvider, run_ctx: RunContext) -> None:
    """Bucket listings are returned in name order."""
    stubber = Stubber(aws_provider.client("s3"))
    stubber.add_response(
        "list_buckets",
        {
            "Buckets": [
                {"Name": "zeta-logs", "CreationDate": datetime(2024, 2, 1, tzinfo=UTC)},
                {"Name": "alpha-assets", "CreationDate": datetime(2024, 1, 1, tzinfo=UTC)},
            ]
        },
        {},
    )
    with stubber:
        buckets = aws_provider.storage.discover(run_ctx)

    assert [bucket.name for bucket in buckets] == ["alpha-assets", "zeta-logs"]
    assert buckets[0].created_at == "2024-01-01T00:00:00Z"


def test_get_role_collects_tags_and_policies(aws_provider: AWSProvider, run_ctx: RunContext) -> None:
    """Roles are assembled from GetRole, tags and attached policies."""
    stubber = Stubber(aws_provider.client("iam"))
    stubber.add_response(
        "get_role",
        {
            "Role": {
                "Path": "/",
                "RoleName": "api-role",
                "RoleId": "AROAEXAMPLEROLEID0001",
                "Arn": ROLE_ARN,
                "CreateDate": datetime(2024, 3, 1, tzinfo=UTC),
                "AssumeRolePolicyDocument": "{}",
            }
        },
        {"RoleName": "api-role"},
    )
    stubber.add_response(
        "list_role_tags",
        {"Tags": [{"Key": "ManagedBy", "Value": "genesys"}], "IsTruncated": False},
        {"RoleName": "api-role"},
    )
    stubber.add_response(
        "list_attached_role_policies",
        {
            "AttachedPolicies": [
                {"PolicyName": "AWSLambdaBasicExecutionRole", "PolicyArn": "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole"}
            ],
            "IsTruncated": False,
        },
        {"RoleName": "api-role"},
    )
    with stubber:
        role = aws_provider.identity.get_role(run_ctx, "api-role")

    assert role.arn == ROLE_ARN
    assert role.managed_by == "genesys"
    assert role.attached_policies == ("arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole",)
    assert role.created_at == "2024-03-01T00:00:00Z"


def test_missing_role_is_not_found(aws_provider: AWSProvider, run_ctx: RunContext) -> None:
    """NoSuchEntity from IAM is reported as a missing role."""
    stubber = Stubber(aws_provider.client("iam"))
    stubber.add_client_error("get_role", service_error_code="NoSuchEntity", http_status_code=404)
    with stubber, pytest.raises(ProviderError) as excinfo:
        aws_provider.identity.get_role(run_ctx, "gone")
    assert excinfo.value.kind is ErrorKind.NOT_FOUND
    assert excinfo.value.message == "role 'gone' was not found."


def test_calls_observe_cancellation(aws_provider: AWSProvider) -> None:
    """No SDK call is issued once the run is cancelled."""
    ctx = RunContext()
    ctx.cancel()
    stubber = Stubber(aws_provider.client("sts"))
    with stubber, pytest.raises(OperationCancelled):
        aws_provider.authenticate(ctx)


def test_package_code_stub_and_directory(tmp_path: Path) -> None:
    """Functions without code get a stub module; directories are zipped."""
    stub = zipfile.ZipFile(io.BytesIO(package_code("", "app.handler")))
    assert stub.namelist() == ["app.py"]
    assert "def handler" in stub.read("app.py").decode("utf-8")

    source = tmp_path / "src"
    (source / "pkg").mkdir(parents=True)
    (source / "main.py").write_text("def handler(event, context):\n    return event\n", encoding="utf-8")
    (source / "pkg" / "util.py").write_text("VALUE = 1\n", encoding="utf-8")
    archive = zipfile.ZipFile(io.BytesIO(package_code(str(source), "main.handler")))
    assert archive.namelist() == ["main.py", "pkg/util.py"]


def test_package_code_missing_path(tmp_path: Path) -> None:
    """A code path that does not exist is a validation error."""
    with pytest.raises(ProviderError) as excinfo:
        package_code(str(tmp_path / "absent"), "main.handler")
    assert excinfo.value.kind is ErrorKind.VALIDATION


def test_close_discards_cached_clients(aws_provider: AWSProvider) -> None:
    """Clients are cached per service until the provider is closed."""
    first = aws_provider.client("s3")
    assert aws_provider.client("s3") is first

    aws_provider.close()
    assert aws_provider.client("s3") is not first


def test_update_without_encryption_removes_bucket_rule(aws_provider: AWSProvider, run_ctx: RunContext) -> None:
    """Turning encryption off deletes the bucket-level encryption rule."""
    spec = BucketSpec(name="assets-bucket", region="us-east-1", provider="aws", encryption=False)
    stubber = Stubber(aws_provider.client("s3"))
    stubber.add_response(
        "put_bucket_versioning",
        {},
        {"Bucket": "assets-bucket", "VersioningConfiguration": {"Status": "Enabled"}},
    )
    stubber.add_response("delete_bucket_encryption", {}, {"Bucket": "assets-bucket"})
    stubber.add_response(
        "put_public_access_block",
        {},
        {
            "Bucket": "assets-bucket",
            "PublicAccessBlockConfiguration": {
                "BlockPublicAcls": True,
                "IgnorePublicAcls": True,
                "BlockPublicPolicy": True,
                "RestrictPublicBuckets": True,
            },
        },
    )
    with stubber:
        aws_provider.storage.update(run_ctx, "assets-bucket", spec)
    stubber.assert_no_pending_responses()
