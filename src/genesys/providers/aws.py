"""AWS adapter on boto3.

Each capability maps onto one or two AWS services (S3, EC2, RDS and
DynamoDB, Lambda, CloudWatch, CloudWatch Logs, IAM, STS). Clients are
created lazily per service and cached for the life of the provider.
botocore's own retry loop is disabled so that retries happen in exactly
one place, :func:`genesys.context.call_with_retry`.
"""
from __future__ import annotations

import io
import json
import logging
import zipfile
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from ..context import RunContext
from ..credentials import ProviderCredentials
from ..errors import ErrorKind, ProviderError
from ..specs import BucketSpec, FunctionSpec, InstanceSpec, NetworkSpec, TableSpec
from .base import (
    ComputeService,
    DatabaseService,
    IdentityService,
    LogsService,
    MonitoringService,
    NetworkService,
    Provider,
    ServerlessService,
    StorageService,
    not_found,
)
from .models import (
    Bucket,
    BucketObject,
    Function,
    Instance,
    LogEvent,
    MetricPoint,
    Network,
    Role,
    Subnet,
    Table,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

INSTANCE_TYPES = {
    "small": "t3.small",
    "medium": "t3.medium",
    "large": "t3.large",
    "xlarge": "t3.xlarge",
}
DB_INSTANCE_CLASSES = {
    "small": "db.t3.micro",
    "medium": "db.t3.medium",
    "large": "db.m5.large",
}
IMAGE_PARAMETERS = {
    "ubuntu-lts": "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id",
    "amazon-linux": "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-x86_64",
}
# Tags recording spec values that cannot be read back from the API.
IMAGE_TAG = "genesys:image"
NETWORK_TAG = "genesys:network"
SUBNET_TAG = "genesys:subnet"

_NOT_FOUND_CODES = frozenset(
    {
        "404",
        "NoSuchBucket",
        "NoSuchKey",
        "NoSuchEntity",
        "NotFound",
        "ResourceNotFoundException",
        "InvalidInstanceID.NotFound",
        "InvalidVpcID.NotFound",
        "InvalidSubnetID.NotFound",
        "DBInstanceNotFound",
        "DBInstanceNotFoundFault",
    }
)
_ALREADY_EXISTS_CODES = frozenset(
    {
        "BucketAlreadyExists",
        "BucketAlreadyOwnedByYou",
        "EntityAlreadyExists",
        "ResourceConflictException",
        "ResourceInUseException",
        "DBInstanceAlreadyExists",
        "DBInstanceAlreadyExistsFault",
    }
)
_UNAUTHORIZED_CODES = frozenset(
    {
        "403",
        "AccessDenied",
        "AccessDeniedException",
        "AuthFailure",
        "ExpiredToken",
        "ExpiredTokenException",
        "InvalidAccessKeyId",
        "InvalidClientTokenId",
        "SignatureDoesNotMatch",
        "UnauthorizedOperation",
        "UnrecognizedClientException",
    }
)
_THROTTLED_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "SlowDown",
        "ProvisionedThroughputExceededException",
    }
)
_TRANSIENT_CODES = frozenset(
    {
        "500",
        "503",
        "InternalError",
        "InternalFailure",
        "InternalServerError",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "RequestTimeout",
        "RequestTimeoutException",
    }
)


def classify_client_error(exc: ClientError, action: str) -> ProviderError:
    """Map a botocore ``ClientError`` onto the shared error kinds."""
    error = exc.response.get("Error", {})
    code = str(error.get("Code", ""))
    message = str(error.get("Message", "")) or str(exc)
    if code in _NOT_FOUND_CODES or code.endswith(".NotFound"):
        kind = ErrorKind.NOT_FOUND
    elif code.endswith(".Malformed") or code == "ValidationError":
        kind = ErrorKind.VALIDATION
    elif code in _ALREADY_EXISTS_CODES or code.endswith(".Duplicate"):
        kind = ErrorKind.ALREADY_EXISTS
    elif code in _UNAUTHORIZED_CODES:
        kind = ErrorKind.UNAUTHORIZED
    elif code in _THROTTLED_CODES:
        kind = ErrorKind.THROTTLED
    elif code in _TRANSIENT_CODES:
        kind = ErrorKind.TRANSIENT
    elif code == "InvalidParameterValueException" and "cannot be assumed" in message:
        # A freshly created role takes a few seconds to propagate to Lambda.
        kind = ErrorKind.TRANSIENT
    else:
        kind = ErrorKind.FATAL
    return ProviderError(f"{action} failed ({code or 'unknown'}): {message}", kind=kind, underlying=exc)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _iso(value: object) -> str:
    if isinstance(value, datetime):
        return value.astimezone(UTC).isoformat().replace("+00:00", "Z")
    return "" if value is None else str(value)


def _tag_dict(tags: object, *, key: str = "Key", value: str = "Value") -> dict[str, str]:
    if isinstance(tags, Mapping):
        return {str(k): str(v) for k, v in tags.items()}
    if not isinstance(tags, list):
        return {}
    return {str(item.get(key)): str(item.get(value, "")) for item in tags if isinstance(item, Mapping)}


def _tag_list(tags: Mapping[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in sorted(tags.items())]


class AWSProvider(Provider):
    """Live AWS provider bound to one session and region."""

    name = "aws"

    def __init__(
        self,
        region: str,
        *,
        credentials: ProviderCredentials | None = None,
        profile: str | None = None,
        session: boto3.Session | None = None,
        call_timeout: float = 60.0,
    ) -> None:
        super().__init__(region)
        self._session = session or _build_session(region, credentials, profile)
        self._config = Config(
            region_name=region,
            connect_timeout=call_timeout,
            read_timeout=call_timeout,
            retries={"max_attempts": 1, "mode": "standard"},
        )
        self._clients: dict[str, Any] = {}
        self._compute = _EC2Compute(self)
        self._storage = _S3Storage(self)
        self._network = _VPCNetwork(self)
        self._database = _Databases(self)
        self._serverless = _LambdaFunctions(self)
        self._monitoring = _CloudWatchMetrics(self)
        self._logs = _CloudWatchLogs(self)
        self._identity = _IAMIdentity(self)

    def client(self, service_name: str) -> Any:
        """Return the cached boto3 client for *service_name*."""
        if service_name not in self._clients:
            self._clients[service_name] = self._session.client(service_name, config=self._config)
        return self._clients[service_name]

    def call(self, ctx: RunContext, action: str, fn: Callable[..., T], /, **kwargs: Any) -> T:
        """Invoke one SDK operation, translating failures to :class:`ProviderError`."""
        ctx.check()
        try:
            return fn(**kwargs)
        except ClientError as exc:
            raise classify_client_error(exc, action) from exc
        except (NoCredentialsError, PartialCredentialsError) as exc:
            raise ProviderError(f"{action} failed: {exc}", kind=ErrorKind.UNAUTHORIZED, underlying=exc) from exc
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as exc:
            raise ProviderError(f"{action} failed: {exc}", kind=ErrorKind.TRANSIENT, underlying=exc) from exc
        except BotoCoreError as exc:
            raise ProviderError(f"{action} failed: {exc}", kind=ErrorKind.FATAL, underlying=exc) from exc

    def paginate(self, ctx: RunContext, service_name: str, operation: str, key: str, **kwargs: Any) -> list[Any]:
        """Collect *key* from every page of *operation*."""
        items: list[Any] = []
        paginator = self.client(service_name).get_paginator(operation)

        def _collect() -> None:
            for page in paginator.paginate(**kwargs):
                ctx.check()
                items.extend(page.get(key, []))

        self.call(ctx, f"{service_name}:{operation}", _collect)
        return items

    @property
    def compute(self) -> ComputeService:
        return self._compute

    @property
    def storage(self) -> StorageService:
        return self._storage

    @property
    def network(self) -> NetworkService:
        return self._network

    @property
    def database(self) -> DatabaseService:
        return self._database

    @property
    def serverless(self) -> ServerlessService:
        return self._serverless

    @property
    def monitoring(self) -> MonitoringService:
        return self._monitoring

    @property
    def logs(self) -> LogsService:
        return self._logs

    @property
    def identity(self) -> IdentityService:
        return self._identity

    def authenticate(self, ctx: RunContext) -> dict[str, str]:
        sts = self.client("sts")
        identity = self.call(ctx, "sts:GetCallerIdentity", sts.get_caller_identity)
        return {
            "account": str(identity.get("Account", "")),
            "arn": str(identity.get("Arn", "")),
            "user_id": str(identity.get("UserId", "")),
        }

    def close(self) -> None:
        self._clients.clear()


def _build_session(
    region: str,
    credentials: ProviderCredentials | None,
    profile: str | None,
) -> boto3.Session:
    if credentials is None or credentials.use_local:
        try:
            return boto3.Session(region_name=region, profile_name=profile)
        except BotoCoreError as exc:
            raise ProviderError(f"Cannot open AWS session: {exc}", kind=ErrorKind.UNAUTHORIZED, underlying=exc) from exc
    values = credentials.credentials
    return boto3.Session(
        aws_access_key_id=values.get("access_key_id"),
        aws_secret_access_key=values.get("secret_access_key"),
        aws_session_token=values.get("session_token") or None,
        region_name=region,
    )


class _AWSService:
    def __init__(self, provider: AWSProvider) -> None:
        self._provider = provider

    @property
    def region(self) -> str:
        return self._provider.region


# ------------------------------------------------------------------
# Storage (S3)
# ------------------------------------------------------------------


class _S3Storage(_AWSService, StorageService):
    def _s3(self) -> Any:
        return self._provider.client("s3")

    def discover(self, ctx: RunContext) -> list[Bucket]:
        response = self._provider.call(ctx, "s3:ListBuckets", self._s3().list_buckets)
        return sorted(
            (
                Bucket(name=item["Name"], created_at=_iso(item.get("CreationDate")))
                for item in response.get("Buckets", [])
            ),
            key=lambda bucket: bucket.name,
        )

    def get(self, ctx: RunContext, resource_id: str) -> Bucket:
        s3 = self._s3()
        call = self._provider.call
        try:
            call(ctx, "s3:HeadBucket", s3.head_bucket, Bucket=resource_id)
        except ProviderError as exc:
            if exc.kind is ErrorKind.NOT_FOUND:
                raise not_found("bucket", resource_id) from exc
            raise
        location = call(ctx, "s3:GetBucketLocation", s3.get_bucket_location, Bucket=resource_id)
        versioning = call(ctx, "s3:GetBucketVersioning", s3.get_bucket_versioning, Bucket=resource_id)
        return Bucket(
            name=resource_id,
            region=location.get("LocationConstraint") or "us-east-1",
            versioning=versioning.get("Status") == "Enabled",
            encryption=self._optional(ctx, "s3:GetBucketEncryption", s3.get_bucket_encryption, resource_id, False, lambda _: True),
            public_access=self._optional(
                ctx,
                "s3:GetPublicAccessBlock",
                s3.get_public_access_block,
                resource_id,
                True,
                lambda response: not all(response.get("PublicAccessBlockConfiguration", {}).values()),
            ),
            lifecycle=self._optional(
                ctx,
                "s3:GetBucketLifecycleConfiguration",
                s3.get_bucket_lifecycle_configuration,
                resource_id,
                None,
                _lifecycle_from_rules,
            ),
            tags=self._optional(
                ctx,
                "s3:GetBucketTagging",
                s3.get_bucket_tagging,
                resource_id,
                {},
                lambda response: _tag_dict(response.get("TagSet")),
            ),
        )

    def _optional(
        self,
        ctx: RunContext,
        action: str,
        fn: Callable[..., Any],
        bucket: str,
        absent: Any,
        extract: Callable[[Any], Any],
    ) -> Any:
        """Read a bucket sub-resource; S3 reports "not configured" as an error."""
        try:
            response = self._provider.call(ctx, action, fn, Bucket=bucket)
        except ProviderError as exc:
            underlying = exc.underlying
            if isinstance(underlying, ClientError):
                code = _error_code(underlying)
                if code.startswith("NoSuch") or code.endswith("NotFoundError"):
                    return absent
            raise
        return extract(response)

    def find_by_name(self, ctx: RunContext, name: str) -> Bucket | None:
        try:
            return self.get(ctx, name)
        except ProviderError as exc:
            if exc.kind is ErrorKind.NOT_FOUND:
                return None
            raise

    def create(self, ctx: RunContext, spec: BucketSpec) -> str:
        kwargs: dict[str, Any] = {"Bucket": spec.name}
        if spec.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": spec.region}
        self._provider.call(ctx, "s3:CreateBucket", self._s3().create_bucket, **kwargs)
        self._apply_settings(ctx, spec)
        return spec.name

    def update(self, ctx: RunContext, resource_id: str, spec: BucketSpec) -> None:
        self._apply_settings(ctx, spec, bucket=resource_id)

    def _apply_settings(self, ctx: RunContext, spec: BucketSpec, *, bucket: str | None = None) -> None:
        s3 = self._s3()
        call = self._provider.call
        name = bucket or spec.name
        call(
            ctx,
            "s3:PutBucketVersioning",
            s3.put_bucket_versioning,
            Bucket=name,
            VersioningConfiguration={"Status": "Enabled" if spec.versioning else "Suspended"},
        )
        if spec.encryption:
            call(
                ctx,
                "s3:PutBucketEncryption",
                s3.put_bucket_encryption,
                Bucket=name,
                ServerSideEncryptionConfiguration={
                    "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}]
                },
            )
        else:
            # S3 falls back to its account default; the bucket-level rule is removed.
            call(ctx, "s3:DeleteBucketEncryption", s3.delete_bucket_encryption, Bucket=name)
        if spec.public_access:
            call(ctx, "s3:DeletePublicAccessBlock", s3.delete_public_access_block, Bucket=name)
        else:
            call(
                ctx,
                "s3:PutPublicAccessBlock",
                s3.put_public_access_block,
                Bucket=name,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": True,
                    "RestrictPublicBuckets": True,
                },
            )
        if spec.lifecycle is not None:
            rule: dict[str, Any] = {"ID": "genesys", "Status": "Enabled", "Filter": {"Prefix": ""}}
            if spec.lifecycle.delete_after_days:
                rule["Expiration"] = {"Days": spec.lifecycle.delete_after_days}
            if spec.lifecycle.archive_after_days:
                rule["Transitions"] = [{"Days": spec.lifecycle.archive_after_days, "StorageClass": "GLACIER"}]
            call(
                ctx,
                "s3:PutBucketLifecycleConfiguration",
                s3.put_bucket_lifecycle_configuration,
                Bucket=name,
                LifecycleConfiguration={"Rules": [rule]},
            )
        if spec.tags:
            call(ctx, "s3:PutBucketTagging", s3.put_bucket_tagging, Bucket=name, Tagging={"TagSet": _tag_list(spec.tags)})

    def delete(self, ctx: RunContext, resource_id: str) -> None:
        self.empty(ctx, resource_id)
        self._provider.call(ctx, "s3:DeleteBucket", self._s3().delete_bucket, Bucket=resource_id)

    def list_objects(self, ctx: RunContext, bucket: str, prefix: str = "") -> list[BucketObject]:
        contents = self._provider.paginate(ctx, "s3", "list_objects_v2", "Contents", Bucket=bucket, Prefix=prefix)
        return [
            BucketObject(
                key=item["Key"],
                size=int(item.get("Size", 0)),
                etag=str(item.get("ETag", "")).strip('"'),
                last_modified=_iso(item.get("LastModified")),
            )
            for item in contents
        ]

    def upload(self, ctx: RunContext, bucket: str, key: str, data: bytes) -> None:
        self._provider.call(ctx, "s3:PutObject", self._s3().put_object, Bucket=bucket, Key=key, Body=data)

    def download(self, ctx: RunContext, bucket: str, key: str) -> bytes:
        response = self._provider.call(ctx, "s3:GetObject", self._s3().get_object, Bucket=bucket, Key=key)
        return response["Body"].read()

    def empty(self, ctx: RunContext, bucket: str) -> int:
        versions = self._provider.paginate(ctx, "s3", "list_object_versions", "Versions", Bucket=bucket)
        markers = self._provider.paginate(ctx, "s3", "list_object_versions", "DeleteMarkers", Bucket=bucket)
        targets = [{"Key": item["Key"], "VersionId": item["VersionId"]} for item in [*versions, *markers]]
        for start in range(0, len(targets), 1000):
            self._provider.call(
                ctx,
                "s3:DeleteObjects",
                self._s3().delete_objects,
                Bucket=bucket,
                Delete={"Objects": targets[start : start + 1000], "Quiet": True},
            )
        return len(targets)


def _lifecycle_from_rules(response: Mapping[str, Any]) -> dict[str, int] | None:
    for rule in response.get("Rules", []):
        if rule.get("ID") != "genesys":
            continue
        transitions = rule.get("Transitions") or [{}]
        return {
            "delete_after_days": int(rule.get("Expiration", {}).get("Days", 0)),
            "archive_after_days": int(transitions[0].get("Days", 0)),
        }
    return None


# ------------------------------------------------------------------
# Compute (EC2)
# ------------------------------------------------------------------


class _EC2Compute(_AWSService, ComputeService):
    def _ec2(self) -> Any:
        return self._provider.client("ec2")

    def _to_model(self, raw: Mapping[str, Any]) -> Instance:
        tags = _tag_dict(raw.get("Tags"))
        sizes = {value: key for key, value in INSTANCE_TYPES.items()}
        instance_type = str(raw.get("InstanceType", ""))
        return Instance(
            id=raw["InstanceId"],
            name=tags.get("Name", raw["InstanceId"]),
            size=sizes.get(instance_type, instance_type),
            state=str(raw.get("State", {}).get("Name", "")),
            image=tags.get(IMAGE_TAG, str(raw.get("ImageId", ""))),
            network=tags.get(NETWORK_TAG, str(raw.get("VpcId", ""))),
            subnet=tags.get(SUBNET_TAG, str(raw.get("SubnetId", ""))),
            private_ip=str(raw.get("PrivateIpAddress", "")),
            public_ip_address=str(raw.get("PublicIpAddress", "")),
            security_groups=tuple(group.get("GroupName", "") for group in raw.get("SecurityGroups", [])),
            key_pair=str(raw.get("KeyName", "")),
            region=self.region,
            launched_at=_iso(raw.get("LaunchTime")),
            tags={key: value for key, value in tags.items() if not key.startswith("genesys:")},
        )

    def _describe(self, ctx: RunContext, **kwargs: Any) -> list[Instance]:
        reservations = self._provider.paginate(ctx, "ec2", "describe_instances", "Reservations", **kwargs)
        return [
            self._to_model(raw)
            for reservation in reservations
            for raw in reservation.get("Instances", [])
            if raw.get("State", {}).get("Name") != "terminated"
        ]

    def discover(self, ctx: RunContext) -> list[Instance]:
        return sorted(self._describe(ctx), key=lambda item: (item.name, item.id))

    def get(self, ctx: RunContext, resource_id: str) -> Instance:
        found = self._describe(ctx, InstanceIds=[resource_id])
        if not found:
            raise not_found("instance", resource_id)
        return found[0]

    def find_by_name(self, ctx: RunContext, name: str) -> Instance | None:
        found = self._describe(ctx, Filters=[{"Name": "tag:Name", "Values": [name]}])
        return found[0] if found else None

    def _resolve_image(self, ctx: RunContext, image: str) -> str:
        if image.startswith("ami-"):
            return image
        parameter = IMAGE_PARAMETERS.get(image)
        if parameter is None:
            raise ProviderError(f"Unknown image alias '{image}'.", kind=ErrorKind.VALIDATION)
        ssm = self._provider.client("ssm")
        response = self._provider.call(ctx, "ssm:GetParameter", ssm.get_parameter, Name=parameter)
        return str(response["Parameter"]["Value"])

    def _resolve_subnet(self, ctx: RunContext, spec: InstanceSpec) -> str | None:
        if not spec.subnet:
            return None
        if spec.subnet.startswith("subnet-"):
            return spec.subnet
        response = self._provider.call(
            ctx,
            "ec2:DescribeSubnets",
            self._ec2().describe_subnets,
            Filters=[{"Name": "tag:Name", "Values": [spec.subnet]}],
        )
        subnets = response.get("Subnets", [])
        if not subnets:
            raise not_found("subnet", spec.subnet)
        return str(subnets[0]["SubnetId"])

    def _resolve_groups(self, ctx: RunContext, groups: list[str]) -> list[str]:
        ids = [group for group in groups if group.startswith("sg-")]
        names = [group for group in groups if not group.startswith("sg-")]
        if names:
            response = self._provider.call(
                ctx,
                "ec2:DescribeSecurityGroups",
                self._ec2().describe_security_groups,
                Filters=[{"Name": "group-name", "Values": names}],
            )
            ids.extend(group["GroupId"] for group in response.get("SecurityGroups", []))
        return ids

    def create(self, ctx: RunContext, spec: InstanceSpec) -> str:
        tags = {**spec.tags, "Name": spec.name, IMAGE_TAG: spec.image}
        if spec.network:
            tags[NETWORK_TAG] = spec.network
        if spec.subnet:
            tags[SUBNET_TAG] = spec.subnet
        kwargs: dict[str, Any] = {
            "ImageId": self._resolve_image(ctx, spec.image),
            "InstanceType": INSTANCE_TYPES[spec.size],
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [{"ResourceType": "instance", "Tags": _tag_list(tags)}],
        }
        subnet_id = self._resolve_subnet(ctx, spec)
        group_ids = self._resolve_groups(ctx, spec.security_groups)
        if spec.public_ip:
            interface: dict[str, Any] = {"DeviceIndex": 0, "AssociatePublicIpAddress": True}
            if subnet_id:
                interface["SubnetId"] = subnet_id
            if group_ids:
                interface["Groups"] = group_ids
            kwargs["NetworkInterfaces"] = [interface]
        else:
            if subnet_id:
                kwargs["SubnetId"] = subnet_id
            if group_ids:
                kwargs["SecurityGroupIds"] = group_ids
        if spec.key_pair:
            kwargs["KeyName"] = spec.key_pair
        if spec.user_data:
            kwargs["UserData"] = spec.user_data
        if spec.instance_profile:
            kwargs["IamInstanceProfile"] = {"Name": spec.instance_profile}
        response = self._provider.call(ctx, "ec2:RunInstances", self._ec2().run_instances, **kwargs)
        return str(response["Instances"][0]["InstanceId"])

    def update(self, ctx: RunContext, resource_id: str, spec: InstanceSpec) -> None:
        ec2 = self._ec2()
        call = self._provider.call
        current = self.get(ctx, resource_id)
        if current.size != spec.size:
            # Instance type changes require a stopped instance.
            call(ctx, "ec2:StopInstances", ec2.stop_instances, InstanceIds=[resource_id])
            waiter = ec2.get_waiter("instance_stopped")
            call(ctx, "ec2:WaitStopped", waiter.wait, InstanceIds=[resource_id])
            call(
                ctx,
                "ec2:ModifyInstanceAttribute",
                ec2.modify_instance_attribute,
                InstanceId=resource_id,
                InstanceType={"Value": INSTANCE_TYPES[spec.size]},
            )
            call(ctx, "ec2:StartInstances", ec2.start_instances, InstanceIds=[resource_id])
        if sorted(current.security_groups) != sorted(spec.security_groups) and spec.security_groups:
            call(
                ctx,
                "ec2:ModifyInstanceAttribute",
                ec2.modify_instance_attribute,
                InstanceId=resource_id,
                Groups=self._resolve_groups(ctx, spec.security_groups),
            )
        if spec.tags:
            call(ctx, "ec2:CreateTags", ec2.create_tags, Resources=[resource_id], Tags=_tag_list(spec.tags))

    def delete(self, ctx: RunContext, resource_id: str) -> None:
        self._provider.call(ctx, "ec2:TerminateInstances", self._ec2().terminate_instances, InstanceIds=[resource_id])


# ------------------------------------------------------------------
# Network (VPC)
# ------------------------------------------------------------------


class _VPCNetwork(_AWSService, NetworkService):
    def _ec2(self) -> Any:
        return self._provider.client("ec2")

    def _subnets(self, ctx: RunContext, vpc_id: str) -> tuple[Subnet, ...]:
        raw = self._provider.paginate(
            ctx, "ec2", "describe_subnets", "Subnets", Filters=[{"Name": "vpc-id", "Values": [vpc_id]}]
        )
        subnets = []
        for item in raw:
            tags = _tag_dict(item.get("Tags"))
            subnets.append(
                Subnet(
                    id=item["SubnetId"],
                    name=tags.get("Name", item["SubnetId"]),
                    cidr=str(item.get("CidrBlock", "")),
                    public=bool(item.get("MapPublicIpOnLaunch", False)),
                    az=str(item.get("AvailabilityZone", "")),
                )
            )
        return tuple(sorted(subnets, key=lambda subnet: subnet.name))

    def _to_model(self, ctx: RunContext, raw: Mapping[str, Any], *, with_subnets: bool) -> Network:
        tags = _tag_dict(raw.get("Tags"))
        return Network(
            id=raw["VpcId"],
            name=tags.get("Name", raw["VpcId"]),
            cidr=str(raw.get("CidrBlock", "")),
            state=str(raw.get("State", "")),
            region=self.region,
            subnets=self._subnets(ctx, raw["VpcId"]) if with_subnets else (),
            tags=tags,
        )

    def discover(self, ctx: RunContext) -> list[Network]:
        raw = self._provider.paginate(ctx, "ec2", "describe_vpcs", "Vpcs")
        return sorted(
            (self._to_model(ctx, item, with_subnets=False) for item in raw),
            key=lambda item: (item.name, item.id),
        )

    def get(self, ctx: RunContext, resource_id: str) -> Network:
        raw = self._provider.paginate(ctx, "ec2", "describe_vpcs", "Vpcs", VpcIds=[resource_id])
        if not raw:
            raise not_found("network", resource_id)
        return self._to_model(ctx, raw[0], with_subnets=True)

    def find_by_name(self, ctx: RunContext, name: str) -> Network | None:
        raw = self._provider.paginate(
            ctx, "ec2", "describe_vpcs", "Vpcs", Filters=[{"Name": "tag:Name", "Values": [name]}]
        )
        return self._to_model(ctx, raw[0], with_subnets=True) if raw else None

    def create(self, ctx: RunContext, spec: NetworkSpec) -> str:
        ec2 = self._ec2()
        call = self._provider.call
        tags = {**spec.tags, "Name": spec.name}
        response = call(
            ctx,
            "ec2:CreateVpc",
            ec2.create_vpc,
            CidrBlock=spec.cidr,
            TagSpecifications=[{"ResourceType": "vpc", "Tags": _tag_list(tags)}],
        )
        vpc_id = str(response["Vpc"]["VpcId"])
        for subnet in spec.subnets:
            kwargs: dict[str, Any] = {
                "VpcId": vpc_id,
                "CidrBlock": subnet.cidr,
                "TagSpecifications": [
                    {"ResourceType": "subnet", "Tags": _tag_list({**spec.tags, "Name": subnet.name})}
                ],
            }
            if subnet.az:
                kwargs["AvailabilityZone"] = subnet.az
            created = call(ctx, "ec2:CreateSubnet", ec2.create_subnet, **kwargs)
            if subnet.public:
                call(
                    ctx,
                    "ec2:ModifySubnetAttribute",
                    ec2.modify_subnet_attribute,
                    SubnetId=created["Subnet"]["SubnetId"],
                    MapPublicIpOnLaunch={"Value": True},
                )
        return vpc_id

    def update(self, ctx: RunContext, resource_id: str, spec: NetworkSpec) -> None:
        if spec.tags:
            self._provider.call(
                ctx, "ec2:CreateTags", self._ec2().create_tags, Resources=[resource_id], Tags=_tag_list(spec.tags)
            )

    def delete(self, ctx: RunContext, resource_id: str) -> None:
        ec2 = self._ec2()
        for subnet in self._subnets(ctx, resource_id):
            self._provider.call(ctx, "ec2:DeleteSubnet", ec2.delete_subnet, SubnetId=subnet.id)
        self._provider.call(ctx, "ec2:DeleteVpc", ec2.delete_vpc, VpcId=resource_id)


# ------------------------------------------------------------------
# Database (DynamoDB and RDS)
# ------------------------------------------------------------------


class _Databases(_AWSService, DatabaseService):
    """Key-value tables on DynamoDB, relational engines on RDS."""

    def _dynamodb(self) -> Any:
        return self._provider.client("dynamodb")

    def _rds(self) -> Any:
        return self._provider.client("rds")

    def _dynamo_model(self, ctx: RunContext, name: str) -> Table:
        dynamodb = self._dynamodb()
        table = self._provider.call(ctx, "dynamodb:DescribeTable", dynamodb.describe_table, TableName=name)["Table"]
        tags = self._provider.call(
            ctx, "dynamodb:ListTagsOfResource", dynamodb.list_tags_of_resource, ResourceArn=table["TableArn"]
        )
        hash_key = next(
            (item["AttributeName"] for item in table.get("KeySchema", []) if item.get("KeyType") == "HASH"),
            None,
        )
        return Table(
            id=table["TableName"],
            name=table["TableName"],
            engine="dynamodb",
            hash_key=hash_key,
            billing_mode=table.get("BillingModeSummary", {}).get("BillingMode", "PROVISIONED"),
            state=str(table.get("TableStatus", "")).lower(),
            region=self.region,
            tags=_tag_dict(tags.get("Tags")),
        )

    def _rds_model(self, raw: Mapping[str, Any]) -> Table:
        classes = {value: key for key, value in DB_INSTANCE_CLASSES.items()}
        endpoint = raw.get("Endpoint") or {}
        return Table(
            id=raw["DBInstanceIdentifier"],
            name=raw["DBInstanceIdentifier"],
            engine=str(raw.get("Engine", "")),
            version=str(raw.get("EngineVersion", "")),
            size=classes.get(raw.get("DBInstanceClass", ""), raw.get("DBInstanceClass")),
            storage=int(raw.get("AllocatedStorage", 0)),
            multi_az=bool(raw.get("MultiAZ", False)),
            backup={
                "retention_days": int(raw.get("BackupRetentionPeriod", 0)),
                "window": str(raw.get("PreferredBackupWindow", "")),
            },
            state=str(raw.get("DBInstanceStatus", "")),
            endpoint=f"{endpoint.get('Address', '')}:{endpoint.get('Port', '')}" if endpoint else "",
            region=self.region,
            tags=_tag_dict(raw.get("TagList")),
        )

    def discover(self, ctx: RunContext) -> list[Table]:
        names = self._provider.paginate(ctx, "dynamodb", "list_tables", "TableNames")
        tables = [self._dynamo_model(ctx, name) for name in names]
        tables.extend(
            self._rds_model(raw)
            for raw in self._provider.paginate(ctx, "rds", "describe_db_instances", "DBInstances")
        )
        return sorted(tables, key=lambda item: (item.name, item.id))

    def get(self, ctx: RunContext, resource_id: str) -> Table:
        found = self.find_by_name(ctx, resource_id)
        if found is None:
            raise not_found("table", resource_id)
        return found

    def find_by_name(self, ctx: RunContext, name: str) -> Table | None:
        try:
            return self._dynamo_model(ctx, name)
        except ProviderError as exc:
            if exc.kind is not ErrorKind.NOT_FOUND:
                raise
        try:
            response = self._provider.call(
                ctx, "rds:DescribeDBInstances", self._rds().describe_db_instances, DBInstanceIdentifier=name
            )
        except ProviderError as exc:
            if exc.kind is ErrorKind.NOT_FOUND:
                return None
            raise
        instances = response.get("DBInstances", [])
        return self._rds_model(instances[0]) if instances else None

    def create(self, ctx: RunContext, spec: TableSpec) -> str:
        if spec.engine == "dynamodb":
            kwargs: dict[str, Any] = {
                "TableName": spec.name,
                "AttributeDefinitions": [{"AttributeName": spec.hash_key, "AttributeType": "S"}],
                "KeySchema": [{"AttributeName": spec.hash_key, "KeyType": "HASH"}],
                "BillingMode": spec.billing_mode,
            }
            if spec.billing_mode == "PROVISIONED":
                kwargs["ProvisionedThroughput"] = {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5}
            if spec.tags:
                kwargs["Tags"] = _tag_list(spec.tags)
            self._provider.call(ctx, "dynamodb:CreateTable", self._dynamodb().create_table, **kwargs)
            return spec.name
        backup = spec.backup
        kwargs = {
            "DBInstanceIdentifier": spec.name,
            "Engine": spec.engine,
            "DBInstanceClass": DB_INSTANCE_CLASSES[spec.size],
            "AllocatedStorage": spec.storage,
            "MultiAZ": spec.multi_az,
            "MasterUsername": "genesys",
            "ManageMasterUserPassword": True,
            "Tags": _tag_list(spec.tags),
        }
        if spec.version:
            kwargs["EngineVersion"] = spec.version
        if backup is not None:
            kwargs["BackupRetentionPeriod"] = backup.retention_days
            kwargs["PreferredBackupWindow"] = backup.window
        self._provider.call(ctx, "rds:CreateDBInstance", self._rds().create_db_instance, **kwargs)
        return spec.name

    def update(self, ctx: RunContext, resource_id: str, spec: TableSpec) -> None:
        if spec.engine == "dynamodb":
            kwargs: dict[str, Any] = {"TableName": resource_id, "BillingMode": spec.billing_mode}
            if spec.billing_mode == "PROVISIONED":
                kwargs["ProvisionedThroughput"] = {"ReadCapacityUnits": 5, "WriteCapacityUnits": 5}
            self._provider.call(ctx, "dynamodb:UpdateTable", self._dynamodb().update_table, **kwargs)
            return
        kwargs = {
            "DBInstanceIdentifier": resource_id,
            "DBInstanceClass": DB_INSTANCE_CLASSES[spec.size],
            "AllocatedStorage": spec.storage,
            "MultiAZ": spec.multi_az,
            "ApplyImmediately": True,
        }
        if spec.version:
            kwargs["EngineVersion"] = spec.version
        if spec.backup is not None:
            kwargs["BackupRetentionPeriod"] = spec.backup.retention_days
            kwargs["PreferredBackupWindow"] = spec.backup.window
        self._provider.call(ctx, "rds:ModifyDBInstance", self._rds().modify_db_instance, **kwargs)

    def delete(self, ctx: RunContext, resource_id: str) -> None:
        table = self.get(ctx, resource_id)
        if table.engine == "dynamodb":
            self._provider.call(ctx, "dynamodb:DeleteTable", self._dynamodb().delete_table, TableName=resource_id)
            return
        self._provider.call(
            ctx,
            "rds:DeleteDBInstance",
            self._rds().delete_db_instance,
            DBInstanceIdentifier=resource_id,
            SkipFinalSnapshot=True,
        )


# ------------------------------------------------------------------
# Serverless (Lambda)
# ------------------------------------------------------------------

_STUB_HANDLER = "def handler(event, context):\n    return {'statusCode': 200}\n"


def package_code(code_path: str, handler: str) -> bytes:
    """Return a deployment zip for *code_path*.

    A ``.zip`` file is used as-is, a directory or single file is zipped,
    and an empty path yields a stub module matching *handler*.
    """
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        if not code_path:
            module = handler.split(".", 1)[0] or "main"
            archive.writestr(f"{module}.py", _STUB_HANDLER)
        else:
            source = Path(code_path).expanduser()
            if source.suffix == ".zip" and source.is_file():
                return source.read_bytes()
            if source.is_dir():
                for item in sorted(source.rglob("*")):
                    if item.is_file():
                        archive.write(item, item.relative_to(source).as_posix())
            elif source.is_file():
                archive.write(source, source.name)
            else:
                raise ProviderError(f"Function code path {source} does not exist.", kind=ErrorKind.VALIDATION)
    return buffer.getvalue()


class _LambdaFunctions(_AWSService, ServerlessService):
    def _lambda(self) -> Any:
        return self._provider.client("lambda")

    def _to_model(self, config: Mapping[str, Any], tags: Mapping[str, str] | None = None) -> Function:
        return Function(
            id=config["FunctionName"],
            name=config["FunctionName"],
            runtime=str(config.get("Runtime", "")),
            handler=str(config.get("Handler", "")),
            memory=int(config.get("MemorySize", 0)),
            timeout=int(config.get("Timeout", 0)),
            environment=dict(config.get("Environment", {}).get("Variables", {})),
            layers=tuple(layer["Arn"] for layer in config.get("Layers", [])),
            role=str(config.get("Role", "")),
            state=str(config.get("State", "Active")),
            last_modified=str(config.get("LastModified", "")),
            region=self.region,
            tags=dict(tags or {}),
        )

    def discover(self, ctx: RunContext) -> list[Function]:
        raw = self._provider.paginate(ctx, "lambda", "list_functions", "Functions")
        return sorted((self._to_model(item) for item in raw), key=lambda item: item.name)

    def get(self, ctx: RunContext, resource_id: str) -> Function:
        response = self._provider.call(ctx, "lambda:GetFunction", self._lambda().get_function, FunctionName=resource_id)
        return self._to_model(response["Configuration"], response.get("Tags"))

    def find_by_name(self, ctx: RunContext, name: str) -> Function | None:
        try:
            return self.get(ctx, name)
        except ProviderError as exc:
            if exc.kind is ErrorKind.NOT_FOUND:
                return None
            raise

    def _configuration(self, spec: FunctionSpec) -> dict[str, Any]:
        return {
            "Runtime": spec.runtime,
            "Role": spec.role,
            "Handler": spec.handler,
            "Timeout": spec.timeout,
            "MemorySize": spec.memory,
            "Environment": {"Variables": dict(spec.environment)},
            "Layers": list(spec.layers),
        }

    def create(self, ctx: RunContext, spec: FunctionSpec) -> str:
        if not spec.role:
            raise ProviderError(f"Function '{spec.name}' has no execution role.", kind=ErrorKind.VALIDATION)
        response = self._provider.call(
            ctx,
            "lambda:CreateFunction",
            self._lambda().create_function,
            FunctionName=spec.name,
            Code={"ZipFile": package_code(spec.code_path, spec.handler)},
            Tags=dict(spec.tags),
            **self._configuration(spec),
        )
        return str(response.get("FunctionName", spec.name))

    def update(self, ctx: RunContext, resource_id: str, spec: FunctionSpec) -> None:
        configuration = self._configuration(spec)
        if not spec.role:
            configuration.pop("Role")
        self._provider.call(
            ctx,
            "lambda:UpdateFunctionConfiguration",
            self._lambda().update_function_configuration,
            FunctionName=resource_id,
            **configuration,
        )
        if spec.tags:
            response = self._provider.call(
                ctx, "lambda:GetFunction", self._lambda().get_function, FunctionName=resource_id
            )
            self._provider.call(
                ctx,
                "lambda:TagResource",
                self._lambda().tag_resource,
                Resource=response["Configuration"]["FunctionArn"],
                Tags=dict(spec.tags),
            )

    def delete(self, ctx: RunContext, resource_id: str) -> None:
        self._provider.call(ctx, "lambda:DeleteFunction", self._lambda().delete_function, FunctionName=resource_id)

    def invoke(self, ctx: RunContext, name: str, payload: bytes = b"{}") -> bytes:
        response = self._provider.call(
            ctx, "lambda:Invoke", self._lambda().invoke, FunctionName=name, Payload=payload
        )
        return response["Payload"].read()


# ------------------------------------------------------------------
# Monitoring and logs (CloudWatch)
# ------------------------------------------------------------------


class _CloudWatchMetrics(_AWSService, MonitoringService):
    def query_metrics(
        self,
        ctx: RunContext,
        namespace: str,
        metric: str,
        *,
        dimensions: Mapping[str, str] | None = None,
        minutes: int = 60,
        period: int = 300,
    ) -> list[MetricPoint]:
        end = datetime.now(UTC)
        cloudwatch = self._provider.client("cloudwatch")
        response = self._provider.call(
            ctx,
            "cloudwatch:GetMetricStatistics",
            cloudwatch.get_metric_statistics,
            Namespace=namespace,
            MetricName=metric,
            Dimensions=[{"Name": key, "Value": value} for key, value in sorted((dimensions or {}).items())],
            StartTime=end - timedelta(minutes=minutes),
            EndTime=end,
            Period=period,
            Statistics=["Average"],
        )
        points = sorted(response.get("Datapoints", []), key=lambda item: item["Timestamp"])
        return [
            MetricPoint(timestamp=_iso(item["Timestamp"]), value=float(item.get("Average", 0.0)), unit=str(item.get("Unit", "")))
            for item in points
        ]


class _CloudWatchLogs(_AWSService, LogsService):
    def tail(
        self,
        ctx: RunContext,
        group: str,
        *,
        minutes: int = 10,
        limit: int = 100,
    ) -> list[LogEvent]:
        logs = self._provider.client("logs")
        start = datetime.now(UTC) - timedelta(minutes=minutes)
        response = self._provider.call(
            ctx,
            "logs:FilterLogEvents",
            logs.filter_log_events,
            logGroupName=group,
            startTime=int(start.timestamp() * 1000),
            limit=limit,
        )
        return [
            LogEvent(
                timestamp=_iso(datetime.fromtimestamp(item["timestamp"] / 1000, tz=UTC)),
                message=str(item.get("message", "")).rstrip("\n"),
                stream=str(item.get("logStreamName", "")),
            )
            for item in response.get("events", [])
        ]


# ------------------------------------------------------------------
# Identity (IAM)
# ------------------------------------------------------------------


class _IAMIdentity(_AWSService, IdentityService):
    def _iam(self) -> Any:
        return self._provider.client("iam")

    def get_role(self, ctx: RunContext, name: str) -> Role:
        iam = self._iam()
        try:
            role = self._provider.call(ctx, "iam:GetRole", iam.get_role, RoleName=name)["Role"]
        except ProviderError as exc:
            if exc.kind is ErrorKind.NOT_FOUND:
                raise not_found("role", name) from exc
            raise
        tags = self._provider.call(ctx, "iam:ListRoleTags", iam.list_role_tags, RoleName=name)
        trust = role.get("AssumeRolePolicyDocument", "")
        return Role(
            name=role["RoleName"],
            arn=role["Arn"],
            attached_policies=tuple(self.list_attached_policies(ctx, name)),
            trust_policy=trust if isinstance(trust, str) else json.dumps(trust, sort_keys=True),
            description=str(role.get("Description", "")),
            created_at=_iso(role.get("CreateDate")),
            tags=_tag_dict(tags.get("Tags")),
        )

    def create_role(
        self,
        ctx: RunContext,
        name: str,
        *,
        trust_policy: str,
        description: str = "",
        tags: Mapping[str, str] | None = None,
    ) -> Role:
        iam = self._iam()
        response = self._provider.call(
            ctx,
            "iam:CreateRole",
            iam.create_role,
            RoleName=name,
            AssumeRolePolicyDocument=trust_policy,
            Description=description,
            Tags=_tag_list(dict(tags or {})),
        )
        role = response["Role"]
        if "ec2.amazonaws.com" in trust_policy:
            # EC2 attaches roles through an instance profile of the same name.
            self._provider.call(
                ctx, "iam:CreateInstanceProfile", iam.create_instance_profile, InstanceProfileName=name
            )
            self._provider.call(
                ctx,
                "iam:AddRoleToInstanceProfile",
                iam.add_role_to_instance_profile,
                InstanceProfileName=name,
                RoleName=name,
            )
        return Role(
            name=role["RoleName"],
            arn=role["Arn"],
            trust_policy=trust_policy,
            description=description,
            created_at=_iso(role.get("CreateDate")),
            tags=dict(tags or {}),
        )

    def delete_role(self, ctx: RunContext, name: str) -> None:
        iam = self._iam()
        profiles = self._provider.paginate(
            ctx, "iam", "list_instance_profiles_for_role", "InstanceProfiles", RoleName=name
        )
        for profile in profiles:
            profile_name = profile["InstanceProfileName"]
            self._provider.call(
                ctx,
                "iam:RemoveRoleFromInstanceProfile",
                iam.remove_role_from_instance_profile,
                InstanceProfileName=profile_name,
                RoleName=name,
            )
            self._provider.call(
                ctx, "iam:DeleteInstanceProfile", iam.delete_instance_profile, InstanceProfileName=profile_name
            )
        self._provider.call(ctx, "iam:DeleteRole", iam.delete_role, RoleName=name)

    def list_attached_policies(self, ctx: RunContext, name: str) -> list[str]:
        attached = self._provider.paginate(
            ctx, "iam", "list_attached_role_policies", "AttachedPolicies", RoleName=name
        )
        return [item["PolicyArn"] for item in attached]

    def attach_policy(self, ctx: RunContext, name: str, policy_arn: str) -> None:
        self._provider.call(ctx, "iam:AttachRolePolicy", self._iam().attach_role_policy, RoleName=name, PolicyArn=policy_arn)

    def detach_policy(self, ctx: RunContext, name: str, policy_arn: str) -> None:
        self._provider.call(ctx, "iam:DetachRolePolicy", self._iam().detach_role_policy, RoleName=name, PolicyArn=policy_arn)


__all__ = ["AWSProvider", "INSTANCE_TYPES", "classify_client_error", "package_code"]
