from stackfold.provider.aws.cluster import ClusterProvider
from stackfold.provider.aws.image import ImageProvider
from stackfold.provider.aws.network import NetworkProvider
from stackfold.provider.aws.node_pool import NodePoolProvider
from stackfold.provider.aws.registry import RegistryProvider
from stackfold.provider.aws.role_attachment import RoleAttachmentProvider
from stackfold.provider.aws.subnet import SubnetProvider

__all__ = [
    "ClusterProvider",
    "ImageProvider",
    "NetworkProvider",
    "NodePoolProvider",
    "RegistryProvider",
    "RoleAttachmentProvider",
    "SubnetProvider",
]
