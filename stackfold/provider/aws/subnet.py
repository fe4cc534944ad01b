from __future__ import annotations

from typing import Any, Dict

from stackfold.errors import ProviderError, ResourceNotFound
from stackfold.logger import logger
from stackfold.provider.aws.utils import AWSProvider, aws_errors, from_tags, to_tags
from stackfold.provider.base import ProviderResult

SUBNET_NOT_FOUND = ("InvalidSubnetID.NotFound",)


class SubnetProvider(AWSProvider):
    """
    Manages an EC2 subnet. Subnets cannot be modified, every change replaces them.
    """

    kind = "subnet"
    service = "ec2"
    retryable_timeouts = frozenset(["read"])

    def create(self, attrs: Dict[str, Any]) -> ProviderResult:
        kwargs: Dict[str, Any] = {
            "VpcId": attrs["vpcId"],
            "CidrBlock": attrs["cidrBlock"],
        }
        if attrs.get("availabilityZone"):
            kwargs["AvailabilityZone"] = attrs["availabilityZone"]
        if attrs.get("tags"):
            kwargs["TagSpecifications"] = [
                {"ResourceType": "subnet", "Tags": to_tags(attrs["tags"])}
            ]

        with aws_errors():
            subnet = self.client.create_subnet(**kwargs)["Subnet"]
        logger.debug(f"Created subnet {subnet['SubnetId']} in {attrs['vpcId']}")

        return ProviderResult(
            provider_ids={"subnetId": subnet["SubnetId"]},
            outputs={
                "subnetId": subnet["SubnetId"],
                "availabilityZone": subnet["AvailabilityZone"],
            },
        )

    def read(self, provider_ids: Dict[str, Any]) -> Dict[str, Any]:
        (subnet_id,) = self._require(provider_ids, "subnetId")
        with aws_errors(SUBNET_NOT_FOUND):
            subnets = self.client.describe_subnets(SubnetIds=[subnet_id])["Subnets"]
        if not subnets:
            raise ResourceNotFound(f"Subnet {subnet_id} not found")

        subnet = subnets[0]
        observed: Dict[str, Any] = {
            "vpcId": subnet["VpcId"],
            "cidrBlock": subnet["CidrBlock"],
            "availabilityZone": subnet["AvailabilityZone"],
        }
        tags = from_tags(subnet.get("Tags", []))
        if tags:
            observed["tags"] = tags
        return observed

    def update(
        self, provider_ids: Dict[str, Any], attrs: Dict[str, Any]
    ) -> Dict[str, Any]:
        raise ProviderError("Subnets cannot be updated in place")

    def delete(self, provider_ids: Dict[str, Any]) -> None:
        (subnet_id,) = self._require(provider_ids, "subnetId")
        with aws_errors(SUBNET_NOT_FOUND):
            self.client.delete_subnet(SubnetId=subnet_id)
        logger.debug(f"Deleted subnet {subnet_id}")
