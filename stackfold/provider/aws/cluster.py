from __future__ import annotations

from typing import Any, Dict, Optional

from stackfold.logger import logger
from stackfold.provider.aws.utils import AWSProvider, aws_errors
from stackfold.provider.base import ProviderResult

CLUSTER_NOT_FOUND = ("ResourceNotFoundException",)


def _outputs(cluster: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "clusterName": cluster["name"],
        "arn": cluster.get("arn"),
        "endpoint": cluster.get("endpoint"),
        "certificateAuthority": (cluster.get("certificateAuthority") or {}).get("data"),
        "version": cluster.get("version"),
    }


class ClusterProvider(AWSProvider):
    """
    Manages an EKS control plane.

    Creating a cluster takes several minutes. When `wait` is set, create and delete
    block until EKS reports the cluster active or gone.
    """

    kind = "cluster"
    service = "eks"
    retryable_timeouts = frozenset(["read"])

    def create(self, attrs: Dict[str, Any]) -> ProviderResult:
        name = attrs["clusterName"]
        vpc_config: Dict[str, Any] = {"subnetIds": list(attrs["subnetIds"])}
        if attrs.get("securityGroupIds"):
            vpc_config["securityGroupIds"] = list(attrs["securityGroupIds"])
        if "endpointPublicAccess" in attrs:
            vpc_config["endpointPublicAccess"] = bool(attrs["endpointPublicAccess"])

        kwargs: Dict[str, Any] = {
            "name": name,
            "roleArn": attrs["roleArn"],
            "resourcesVpcConfig": vpc_config,
        }
        if attrs.get("kubernetesVersion"):
            kwargs["version"] = str(attrs["kubernetesVersion"])
        if attrs.get("tags"):
            kwargs["tags"] = {k: str(v) for k, v in attrs["tags"].items()}

        logger.info(f"Creating EKS cluster {name}. This may take a while...")
        with aws_errors():
            cluster = self.client.create_cluster(**kwargs)["cluster"]

        if self.wait:
            with aws_errors():
                self.client.get_waiter("cluster_active").wait(name=name)
            cluster = self._describe(name)

        return ProviderResult(provider_ids={"clusterName": name}, outputs=_outputs(cluster))

    def identify(self, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        name = attrs.get("clusterName")
        return {"clusterName": name} if name else None

    def _describe(self, name: str) -> Dict[str, Any]:
        with aws_errors(CLUSTER_NOT_FOUND):
            return self.client.describe_cluster(name=name)["cluster"]

    def read(self, provider_ids: Dict[str, Any]) -> Dict[str, Any]:
        (name,) = self._require(provider_ids, "clusterName")
        cluster = self._describe(name)
        vpc_config = cluster.get("resourcesVpcConfig", {})
        observed: Dict[str, Any] = {
            "clusterName": cluster["name"],
            "roleArn": cluster.get("roleArn"),
            "subnetIds": vpc_config.get("subnetIds", []),
            "kubernetesVersion": cluster.get("version"),
        }
        if "endpointPublicAccess" in vpc_config:
            observed["endpointPublicAccess"] = vpc_config["endpointPublicAccess"]
        if cluster.get("tags"):
            observed["tags"] = cluster["tags"]
        return observed

    def update(
        self, provider_ids: Dict[str, Any], attrs: Dict[str, Any]
    ) -> Dict[str, Any]:
        (name,) = self._require(provider_ids, "clusterName")
        cluster = self._describe(name)

        version = attrs.get("kubernetesVersion")
        if version and str(version) != cluster.get("version"):
            logger.info(f"Upgrading EKS cluster {name} to {version}...")
            with aws_errors(CLUSTER_NOT_FOUND):
                self.client.update_cluster_version(name=name, version=str(version))
                if self.wait:
                    self.client.get_waiter("cluster_active").wait(name=name)

        if attrs.get("tags"):
            with aws_errors(CLUSTER_NOT_FOUND):
                self.client.tag_resource(
                    resourceArn=cluster["arn"],
                    tags={k: str(v) for k, v in attrs["tags"].items()},
                )

        return _outputs(self._describe(name))

    def delete(self, provider_ids: Dict[str, Any]) -> None:
        (name,) = self._require(provider_ids, "clusterName")
        logger.info(f"Deleting EKS cluster {name}...")
        with aws_errors(CLUSTER_NOT_FOUND):
            self.client.delete_cluster(name=name)
        if self.wait:
            with aws_errors():
                self.client.get_waiter("cluster_deleted").wait(name=name)
