from __future__ import annotations

from stackfold.resource.model import KindRegistry, KindSpec

NETWORK = KindSpec(
    name="network",
    required=("cidrBlock",),
    force_replace=("cidrBlock",),
    description="A virtual private network.",
)

SUBNET = KindSpec(
    name="subnet",
    required=("vpcId", "cidrBlock"),
    updatable=False,
    description="A subnet of a network.",
)

REGISTRY = KindSpec(
    name="registry",
    required=("repositoryName",),
    force_replace=("repositoryName",),
    description="A container registry repository.",
)

# Pushing an image has no natural attribute diff. It is still a graph node so that
# anything needing the image can depend on it.
IMAGE = KindSpec(
    name="image",
    required=("source", "repositoryUrl"),
    force_replace=("repositoryUrl", "tag"),
    description="An image pushed from the local docker daemon to a registry.",
)

CLUSTER = KindSpec(
    name="cluster",
    required=("clusterName", "roleArn", "subnetIds"),
    force_replace=("clusterName", "roleArn", "subnetIds"),
    description="A Kubernetes control plane.",
)

NODE_POOL = KindSpec(
    name="node_pool",
    required=(
        "clusterName",
        "nodegroupName",
        "nodeRoleArn",
        "subnetIds",
        "instanceTypes",
        "minSize",
        "maxSize",
    ),
    force_replace=(
        "clusterName",
        "nodegroupName",
        "nodeRoleArn",
        "subnetIds",
        "instanceTypes",
    ),
    description="A managed group of worker nodes attached to a cluster.",
)

# Role attachments cannot be modified, only detached and attached again
ROLE_ATTACHMENT = KindSpec(
    name="role_attachment",
    required=("roleName", "policyArn"),
    updatable=False,
    description="A managed policy attached to a role.",
)

WORKLOAD = KindSpec(
    name="workload",
    required=("manifest",),
    description="A namespaced Kubernetes manifest.",
)

BUILTIN_KINDS = [
    NETWORK,
    SUBNET,
    REGISTRY,
    IMAGE,
    CLUSTER,
    NODE_POOL,
    ROLE_ATTACHMENT,
    WORKLOAD,
]


def default_kind_registry() -> KindRegistry:
    return KindRegistry(BUILTIN_KINDS)
