from __future__ import annotations

from typing import Any, Dict, Optional

from stackfold.errors import ProviderError
from stackfold.logger import logger
from stackfold.provider.aws.utils import AWSProvider, aws_errors
from stackfold.provider.base import ProviderResult

NODEGROUP_NOT_FOUND = ("ResourceNotFoundException",)


def _scaling_config(attrs: Dict[str, Any]) -> Dict[str, int]:
    min_size = int(attrs["minSize"])
    max_size = int(attrs["maxSize"])
    desired_size = int(attrs.get("desiredSize", min_size))
    if not min_size <= desired_size <= max_size:
        raise ProviderError(
            f"Invalid scaling config: expected minSize <= desiredSize <= maxSize, got "
            f"{min_size}, {desired_size}, {max_size}"
        )
    return {"minSize": min_size, "maxSize": max_size, "desiredSize": desired_size}


class NodePoolProvider(AWSProvider):
    """
    Manages an EKS managed node group.

    Only the scaling config and the labels can change in place. Any other change
    replaces the node group.
    """

    kind = "node_pool"
    service = "eks"
    retryable_timeouts = frozenset(["read"])

    def create(self, attrs: Dict[str, Any]) -> ProviderResult:
        cluster_name = attrs["clusterName"]
        name = attrs["nodegroupName"]

        kwargs: Dict[str, Any] = {
            "clusterName": cluster_name,
            "nodegroupName": name,
            "scalingConfig": _scaling_config(attrs),
            "subnets": list(attrs["subnetIds"]),
            "instanceTypes": list(attrs["instanceTypes"]),
            "nodeRole": attrs["nodeRoleArn"],
        }
        if attrs.get("amiType"):
            kwargs["amiType"] = attrs["amiType"]
        if attrs.get("capacityType"):
            kwargs["capacityType"] = attrs["capacityType"]
        if attrs.get("diskSize"):
            kwargs["diskSize"] = int(attrs["diskSize"])
        if attrs.get("labels"):
            kwargs["labels"] = {k: str(v) for k, v in attrs["labels"].items()}

        logger.info(f"Creating node group {name} in {cluster_name}...")
        with aws_errors():
            nodegroup = self.client.create_nodegroup(**kwargs)["nodegroup"]
        if self.wait:
            with aws_errors():
                self.client.get_waiter("nodegroup_active").wait(
                    clusterName=cluster_name, nodegroupName=name
                )

        return ProviderResult(
            provider_ids={"clusterName": cluster_name, "nodegroupName": name},
            outputs={
                "nodegroupName": name,
                "nodegroupArn": nodegroup.get("nodegroupArn"),
            },
        )

    def identify(self, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not attrs.get("clusterName") or not attrs.get("nodegroupName"):
            return None
        return {
            "clusterName": attrs["clusterName"],
            "nodegroupName": attrs["nodegroupName"],
        }

    def _describe(self, cluster_name: str, name: str) -> Dict[str, Any]:
        with aws_errors(NODEGROUP_NOT_FOUND):
            return self.client.describe_nodegroup(
                clusterName=cluster_name, nodegroupName=name
            )["nodegroup"]

    def read(self, provider_ids: Dict[str, Any]) -> Dict[str, Any]:
        cluster_name, name = self._require(provider_ids, "clusterName", "nodegroupName")
        nodegroup = self._describe(cluster_name, name)
        scaling = nodegroup.get("scalingConfig", {})
        observed: Dict[str, Any] = {
            "clusterName": nodegroup.get("clusterName", cluster_name),
            "nodegroupName": nodegroup.get("nodegroupName", name),
            "nodeRoleArn": nodegroup.get("nodeRole"),
            "subnetIds": nodegroup.get("subnets", []),
            "instanceTypes": nodegroup.get("instanceTypes", []),
            "minSize": scaling.get("minSize"),
            "maxSize": scaling.get("maxSize"),
            "desiredSize": scaling.get("desiredSize"),
        }
        if nodegroup.get("labels"):
            observed["labels"] = nodegroup["labels"]
        return observed

    def update(
        self, provider_ids: Dict[str, Any], attrs: Dict[str, Any]
    ) -> Dict[str, Any]:
        cluster_name, name = self._require(provider_ids, "clusterName", "nodegroupName")
        current = self._describe(cluster_name, name)

        kwargs: Dict[str, Any] = {
            "clusterName": cluster_name,
            "nodegroupName": name,
            "scalingConfig": _scaling_config(attrs),
        }
        desired_labels = {k: str(v) for k, v in (attrs.get("labels") or {}).items()}
        current_labels = current.get("labels") or {}
        stale = sorted(set(current_labels) - set(desired_labels))
        if desired_labels != current_labels:
            kwargs["labels"] = {"addOrUpdateLabels": desired_labels}
            if stale:
                kwargs["labels"]["removeLabels"] = stale

        with aws_errors(NODEGROUP_NOT_FOUND):
            self.client.update_nodegroup_config(**kwargs)
            if self.wait:
                self.client.get_waiter("nodegroup_active").wait(
                    clusterName=cluster_name, nodegroupName=name
                )

        return {"nodegroupName": name, "nodegroupArn": current.get("nodegroupArn")}

    def delete(self, provider_ids: Dict[str, Any]) -> None:
        cluster_name, name = self._require(provider_ids, "clusterName", "nodegroupName")
        logger.info(f"Deleting node group {name} of {cluster_name}...")
        with aws_errors(NODEGROUP_NOT_FOUND):
            self.client.delete_nodegroup(clusterName=cluster_name, nodegroupName=name)
        if self.wait:
            with aws_errors():
                self.client.get_waiter("nodegroup_deleted").wait(
                    clusterName=cluster_name, nodegroupName=name
                )
