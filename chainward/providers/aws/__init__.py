"""AWS provider: EC2 gateway and defaults."""

from __future__ import annotations

from types import MappingProxyType

from chainward.providers.aws.gateway import AWSGateway, wrap_errors

AWS_DEFAULTS = MappingProxyType(
    {
        "region": "us-east-1",
        "instance_size": "m5.xlarge",
        "disk_size": 500,
        "image_id": "ami-0c7217cdde317cfec",
        "ssh_user": "ubuntu",
    }
)

__all__ = ["AWS_DEFAULTS", "AWSGateway", "wrap_errors"]
