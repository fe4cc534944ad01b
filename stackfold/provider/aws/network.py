from __future__ import annotations

from typing import Any, Dict

from stackfold.errors import ResourceNotFound
from stackfold.logger import logger
from stackfold.provider.aws.utils import AWSProvider, aws_errors, from_tags, to_tags
from stackfold.provider.base import ProviderResult

VPC_NOT_FOUND = ("InvalidVpcID.NotFound",)

DNS_ATTRIBUTES = ("enableDnsHostnames", "enableDnsSupport")


def _api_name(name: str) -> str:
    return name[0].upper() + name[1:]


class NetworkProvider(AWSProvider):
    """
    Manages an EC2 VPC.

    Attributes:
        cidrBlock: The IPv4 range of the VPC. Changing it replaces the VPC.
        enableDnsHostnames: Optional.
        enableDnsSupport: Optional.
        tags: Optional mapping of tags.

    Outputs `vpcId` and `cidrBlock`.
    """

    kind = "network"
    service = "ec2"
    retryable_timeouts = frozenset(["read"])

    def create(self, attrs: Dict[str, Any]) -> ProviderResult:
        kwargs: Dict[str, Any] = {"CidrBlock": attrs["cidrBlock"]}
        if attrs.get("tags"):
            kwargs["TagSpecifications"] = [
                {"ResourceType": "vpc", "Tags": to_tags(attrs["tags"])}
            ]

        with aws_errors():
            vpc = self.client.create_vpc(**kwargs)["Vpc"]
        vpc_id = vpc["VpcId"]
        logger.debug(f"Created VPC {vpc_id}")

        if self.wait:
            with aws_errors():
                self.client.get_waiter("vpc_available").wait(VpcIds=[vpc_id])

        self._set_dns_attributes(vpc_id, attrs)
        return ProviderResult(
            provider_ids={"vpcId": vpc_id},
            outputs={"vpcId": vpc_id, "cidrBlock": vpc["CidrBlock"]},
        )

    def _set_dns_attributes(self, vpc_id: str, attrs: Dict[str, Any]) -> None:
        # EC2 accepts a single attribute per call
        for name in DNS_ATTRIBUTES:
            if name in attrs:
                with aws_errors(VPC_NOT_FOUND):
                    self.client.modify_vpc_attribute(
                        VpcId=vpc_id, **{_api_name(name): {"Value": bool(attrs[name])}}
                    )

    def read(self, provider_ids: Dict[str, Any]) -> Dict[str, Any]:
        (vpc_id,) = self._require(provider_ids, "vpcId")
        with aws_errors(VPC_NOT_FOUND):
            vpcs = self.client.describe_vpcs(VpcIds=[vpc_id])["Vpcs"]
        if not vpcs:
            raise ResourceNotFound(f"VPC {vpc_id} not found")

        vpc = vpcs[0]
        observed: Dict[str, Any] = {"cidrBlock": vpc["CidrBlock"]}
        tags = from_tags(vpc.get("Tags", []))
        if tags:
            observed["tags"] = tags
        for name in DNS_ATTRIBUTES:
            with aws_errors(VPC_NOT_FOUND):
                value = self.client.describe_vpc_attribute(
                    VpcId=vpc_id, Attribute=name
                )
            observed[name] = value[_api_name(name)]["Value"]
        return observed

    def update(
        self, provider_ids: Dict[str, Any], attrs: Dict[str, Any]
    ) -> Dict[str, Any]:
        (vpc_id,) = self._require(provider_ids, "vpcId")
        current = self.read(provider_ids)

        desired_tags = {k: str(v) for k, v in (attrs.get("tags") or {}).items()}
        current_tags = current.get("tags", {})
        stale = sorted(set(current_tags) - set(desired_tags))
        with aws_errors(VPC_NOT_FOUND):
            if stale:
                self.client.delete_tags(
                    Resources=[vpc_id], Tags=[{"Key": k} for k in stale]
                )
            if desired_tags and desired_tags != current_tags:
                self.client.create_tags(Resources=[vpc_id], Tags=to_tags(desired_tags))

        self._set_dns_attributes(vpc_id, attrs)
        return {"vpcId": vpc_id, "cidrBlock": current["cidrBlock"]}

    def delete(self, provider_ids: Dict[str, Any]) -> None:
        (vpc_id,) = self._require(provider_ids, "vpcId")
        with aws_errors(VPC_NOT_FOUND):
            self.client.delete_vpc(VpcId=vpc_id)
        logger.debug(f"Deleted VPC {vpc_id}")
