"""EC2 gateway: key pairs, security groups and instances for one region."""

from __future__ import annotations

import functools
import os
import shlex
from collections.abc import Callable, Mapping, Sequence
from functools import cached_property
from pathlib import Path
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from chainward.constants import INSTANCE_RUNNING_DELAY, INSTANCE_RUNNING_MAX_ATTEMPTS, ChainwardTag
from chainward.errors import KeyMaterialError, ProviderError
from chainward.providers.base import OnCreated
from chainward.types import KeyPair, LaunchSpec, ResourceKind, ResourceRecord, SecurityRule

if TYPE_CHECKING:
    import boto3
    from mypy_boto3_ec2 import EC2Client
    from mypy_boto3_sts import STSClient

P = ParamSpec("P")
T = TypeVar("T")

log = logger.bind(component="aws")

KEY_NOT_FOUND = "InvalidKeyPair.NotFound"
ROOT_DEVICE = "/dev/sda1"


def wrap_errors(operation: str) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Translate botocore failures into ``ProviderError``."""

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except ClientError as e:
                error = e.response.get("Error", {})
                raise ProviderError(
                    operation, error.get("Message", str(e)), error.get("Code")
                ) from e
            except BotoCoreError as e:
                raise ProviderError(operation, str(e)) from e

        return wrapper

    return decorator


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


def _tag_spec(resource_type: str, tags: Mapping[str, str]) -> list[dict[str, Any]]:
    return [
        {
            "ResourceType": resource_type,
            "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
        }
    ]


def _ip_permission(rule: SecurityRule) -> dict[str, Any]:
    return {
        "IpProtocol": rule.protocol,
        "FromPort": rule.from_port,
        "ToPort": rule.to_port,
        "IpRanges": [{"CidrIp": rule.cidr, "Description": rule.description}],
    }


class AWSGateway:
    """ProviderGateway over EC2 and STS.

    Clients are created lazily from ``session`` (a ``boto3.Session`` by
    default) so constructing a gateway never touches the network.
    """

    def __init__(self, region: str, session: boto3.Session | None = None) -> None:
        self.region = region
        self._session = session

    @property
    def name(self) -> str:
        return "aws"

    @cached_property
    def _boto_session(self) -> Any:
        if self._session is not None:
            return self._session
        import boto3

        return boto3.Session()

    @cached_property
    def _ec2(self) -> EC2Client:
        return self._boto_session.client("ec2", region_name=self.region)

    @cached_property
    def _sts(self) -> STSClient:
        return self._boto_session.client("sts", region_name=self.region)

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    @wrap_errors("sts:GetCallerIdentity")
    def verify_credentials(self) -> None:
        identity = self._sts.get_caller_identity()
        log.info("AWS credentials verified (account {account})", account=identity.get("Account"))

    # -------------------------------------------------------------------------
    # Key pairs
    # -------------------------------------------------------------------------

    @wrap_errors("ec2:DescribeKeyPairs")
    def _key_pair_exists(self, name: str) -> bool:
        try:
            self._ec2.describe_key_pairs(KeyNames=[name])
        except ClientError as e:
            if _error_code(e) == KEY_NOT_FOUND:
                return False
            raise
        return True

    @wrap_errors("ec2:CreateKeyPair")
    def _create_key_pair(self, name: str) -> str | None:
        resp = self._ec2.create_key_pair(KeyName=name)
        return resp.get("KeyMaterial")

    def ensure_key_pair(self, name: str, key_dir: Path, on_created: OnCreated) -> KeyPair:
        key_file = key_dir / f"{name}.pem"

        if self._key_pair_exists(name):
            log.info("Using existing key pair: {name}", name=name)
            if not os.access(key_file, os.R_OK):
                log.warning(
                    "Private key file {path} not found locally; "
                    "remote shell access will not be possible",
                    path=key_file,
                )
                return KeyPair(name=name, path=None, created=False)
            return KeyPair(name=name, path=key_file, created=False)

        log.info("Creating key pair: {name}", name=name)
        material = self._create_key_pair(name)
        on_created(name)
        if not material:
            raise KeyMaterialError(f"No key material returned for key pair {name}")

        _write_private_key(key_file, material)
        log.info("Private key saved to {path}", path=key_file)
        return KeyPair(name=name, path=key_file, created=True)

    def delete_key_pair(self, name: str) -> bool:
        log.info("Deleting key pair {name}", name=name)
        try:
            wrap_errors("ec2:DeleteKeyPair")(self._ec2.delete_key_pair)(KeyName=name)
        except ProviderError as e:
            log.warning("Failed to delete key pair {name}: {err}", name=name, err=e)
            return False
        return True

    # -------------------------------------------------------------------------
    # Security groups
    # -------------------------------------------------------------------------

    @wrap_errors("ec2:DescribeSecurityGroups")
    def _find_security_groups(self, name: str) -> list[str]:
        resp = self._ec2.describe_security_groups(
            Filters=[{"Name": "group-name", "Values": [name]}]
        )
        return [sg["GroupId"] for sg in resp.get("SecurityGroups", [])]

    @wrap_errors("ec2:CreateSecurityGroup")
    def _create_security_group(self, name: str, tags: Mapping[str, str]) -> str | None:
        resp = self._ec2.create_security_group(
            GroupName=name,
            Description=f"Chainward verifier node security group ({name})",
            TagSpecifications=_tag_spec("security-group", tags),  # type: ignore[arg-type]
        )
        return resp.get("GroupId")

    def ensure_security_group(
        self,
        name: str,
        rules: Sequence[SecurityRule],
        tags: Mapping[str, str],
        on_created: OnCreated,
    ) -> str:
        for existing in self._find_security_groups(name):
            log.info("Deleting existing security group {sg}", sg=existing)
            self.delete_security_group(existing)

        group_id = self._create_security_group(name, tags)
        if not group_id:
            raise ProviderError("ec2:CreateSecurityGroup", f"no group id returned for {name}")
        on_created(group_id)
        log.info("Created security group {sg}", sg=group_id)

        for rule in rules:
            self._authorize(group_id, rule)
        return group_id

    def _authorize(self, group_id: str, rule: SecurityRule) -> None:
        try:
            wrap_errors("ec2:AuthorizeSecurityGroupIngress")(
                self._ec2.authorize_security_group_ingress
            )(GroupId=group_id, IpPermissions=[_ip_permission(rule)])
        except ProviderError as e:
            log.warning("Failed to add ingress rule '{rule}': {err}", rule=rule.description, err=e)
            return
        log.info("Added ingress rule: {rule}", rule=rule.description)

    def delete_security_group(self, group_id: str) -> bool:
        log.info("Deleting security group {sg}", sg=group_id)
        try:
            wrap_errors("ec2:DeleteSecurityGroup")(self._ec2.delete_security_group)(
                GroupId=group_id
            )
        except ProviderError as e:
            log.warning("Failed to delete security group {sg}: {err}", sg=group_id, err=e)
            return False
        return True

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    @wrap_errors("ec2:RunInstances")
    def _run_instance(self, spec: LaunchSpec, user_data: str) -> str | None:
        tags = {
            ChainwardTag.NAME: spec.name,
            ChainwardTag.PROJECT: spec.project,
            ChainwardTag.ENVIRONMENT: spec.environment,
            ChainwardTag.MANAGED: "true",
        }
        resp = self._ec2.run_instances(
            ImageId=spec.image_id,
            InstanceType=spec.instance_size,  # type: ignore[arg-type]
            KeyName=spec.key_name,
            SecurityGroupIds=[spec.security_group_id],
            MinCount=1,
            MaxCount=1,
            UserData=user_data,
            BlockDeviceMappings=[
                {
                    "DeviceName": ROOT_DEVICE,
                    "Ebs": {
                        "VolumeSize": spec.disk_size,
                        "VolumeType": "gp3",
                        "DeleteOnTermination": True,
                    },
                }
            ],
            TagSpecifications=_tag_spec("instance", tags),  # type: ignore[arg-type]
        )
        instances = resp.get("Instances", [])
        return instances[0].get("InstanceId") if instances else None

    @wrap_errors("ec2:WaitInstanceRunning")
    def _wait_running(self, instance_id: str) -> None:
        waiter = self._ec2.get_waiter("instance_running")
        waiter.wait(
            InstanceIds=[instance_id],
            WaiterConfig={"Delay": INSTANCE_RUNNING_DELAY, "MaxAttempts": INSTANCE_RUNNING_MAX_ATTEMPTS},
        )

    def launch_instance(self, spec: LaunchSpec, user_data: str, on_created: OnCreated) -> str:
        log.info(
            "Launching {size} instance {name} ({disk} GB)",
            size=spec.instance_size,
            name=spec.name,
            disk=spec.disk_size,
        )
        instance_id = self._run_instance(spec, user_data)
        if not instance_id:
            raise ProviderError("ec2:RunInstances", "no instance id returned")
        on_created(instance_id)
        log.info("Created instance {id}, waiting for it to run", id=instance_id)

        self._wait_running(instance_id)
        log.info("Instance {id} is running", id=instance_id)
        self._tag_volumes(instance_id, spec)
        return instance_id

    def _tag_volumes(self, instance_id: str, spec: LaunchSpec) -> None:
        try:
            resp = wrap_errors("ec2:DescribeVolumes")(self._ec2.describe_volumes)(
                Filters=[{"Name": "attachment.instance-id", "Values": [instance_id]}]
            )
            volume_ids = [v["VolumeId"] for v in resp.get("Volumes", [])]
            if volume_ids:
                wrap_errors("ec2:CreateTags")(self._ec2.create_tags)(
                    Resources=volume_ids,
                    Tags=[
                        {"Key": ChainwardTag.NAME, "Value": f"{spec.name}-volume"},
                        {"Key": ChainwardTag.PROJECT, "Value": spec.project},
                        {"Key": ChainwardTag.MANAGED, "Value": "true"},
                    ],
                )
                log.debug("Tagged volumes {ids}", ids=volume_ids)
        except ProviderError as e:
            log.warning("Failed to tag volumes of {id}: {err}", id=instance_id, err=e)

    @wrap_errors("ec2:DescribeInstances")
    def _describe_instance(self, instance_id: str) -> dict[str, Any]:
        resp = self._ec2.describe_instances(InstanceIds=[instance_id])
        for reservation in resp.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return dict(instance)
        raise ProviderError("ec2:DescribeInstances", f"instance {instance_id} not found")

    def get_public_address(self, instance_id: str) -> str | None:
        return self._describe_instance(instance_id).get("PublicIpAddress")

    def describe_status(self, instance_id: str) -> str:
        return self._describe_instance(instance_id).get("State", {}).get("Name", "unknown")

    def terminate_instance(self, instance_id: str) -> bool:
        log.info("Terminating instance {id}", id=instance_id)
        try:
            wrap_errors("ec2:TerminateInstances")(self._ec2.terminate_instances)(
                InstanceIds=[instance_id]
            )
            log.info("Waiting for instance termination...")
            waiter = self._ec2.get_waiter("instance_terminated")
            wrap_errors("ec2:WaitInstanceTerminated")(waiter.wait)(InstanceIds=[instance_id])
        except ProviderError as e:
            log.warning("Failed to terminate instance {id}: {err}", id=instance_id, err=e)
            return False
        return True

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    def recovery_command(self, record: ResourceRecord) -> str:
        region = shlex.quote(self.region)
        ident = shlex.quote(record.id)
        match record.kind:
            case ResourceKind.INSTANCE:
                return f"aws ec2 terminate-instances --instance-ids {ident} --region {region}"
            case ResourceKind.SECURITY_GROUP:
                return f"aws ec2 delete-security-group --group-id {ident} --region {region}"
            case ResourceKind.KEY:
                return f"aws ec2 delete-key-pair --key-name {ident} --region {region}"


def _write_private_key(path: Path, material: str) -> None:
    """Persist key material with owner-only permissions and read it back."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.unlink(missing_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(material if material.endswith("\n") else material + "\n")
        path.chmod(0o400)
        if path.read_text().strip() != material.strip():
            raise KeyMaterialError(f"Key file {path} does not match the key material")
    except OSError as e:
        raise KeyMaterialError(f"Cannot persist private key to {path}: {e}") from e
