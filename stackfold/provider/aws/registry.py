from __future__ import annotations

from typing import Any, Dict, Optional

from stackfold.errors import ResourceNotFound
from stackfold.logger import logger
from stackfold.provider.aws.utils import AWSProvider, aws_errors, from_tags, to_tags
from stackfold.provider.base import ProviderResult

REPOSITORY_NOT_FOUND = ("RepositoryNotFoundException",)


def _outputs(repository: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "repositoryName": repository["repositoryName"],
        "repositoryUrl": repository["repositoryUri"],
        "repositoryArn": repository["repositoryArn"],
        "registryId": repository["registryId"],
    }


class RegistryProvider(AWSProvider):
    """
    Manages an ECR repository.

    The repository is deleted together with its images, the same way the cluster
    registry is force-deleted on teardown.
    """

    kind = "registry"
    service = "ecr"
    retryable_timeouts = frozenset(["read"])

    def create(self, attrs: Dict[str, Any]) -> ProviderResult:
        name = attrs["repositoryName"]
        kwargs: Dict[str, Any] = {
            "repositoryName": name,
            "imageTagMutability": attrs.get("imageTagMutability", "MUTABLE"),
        }
        if attrs.get("tags"):
            kwargs["tags"] = to_tags(attrs["tags"])

        with aws_errors():
            repository = self.client.create_repository(**kwargs)["repository"]
        logger.debug(f"Created repository {repository['repositoryUri']}")

        return ProviderResult(
            provider_ids={"repositoryName": name}, outputs=_outputs(repository)
        )

    def identify(self, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        # Repository names are unique per account and region
        name = attrs.get("repositoryName")
        return {"repositoryName": name} if name else None

    def _describe(self, name: str) -> Dict[str, Any]:
        with aws_errors(REPOSITORY_NOT_FOUND):
            repositories = self.client.describe_repositories(repositoryNames=[name])[
                "repositories"
            ]
        if not repositories:
            raise ResourceNotFound(f"Repository {name} not found")
        return repositories[0]

    def read(self, provider_ids: Dict[str, Any]) -> Dict[str, Any]:
        (name,) = self._require(provider_ids, "repositoryName")
        repository = self._describe(name)
        observed = {
            "repositoryName": repository["repositoryName"],
            "imageTagMutability": repository.get("imageTagMutability", "MUTABLE"),
        }
        with aws_errors(REPOSITORY_NOT_FOUND):
            tags = self.client.list_tags_for_resource(
                resourceArn=repository["repositoryArn"]
            ).get("tags", [])
        if tags:
            observed["tags"] = from_tags(tags)
        return observed

    def update(
        self, provider_ids: Dict[str, Any], attrs: Dict[str, Any]
    ) -> Dict[str, Any]:
        (name,) = self._require(provider_ids, "repositoryName")
        repository = self._describe(name)

        with aws_errors(REPOSITORY_NOT_FOUND):
            self.client.put_image_tag_mutability(
                repositoryName=name,
                imageTagMutability=attrs.get("imageTagMutability", "MUTABLE"),
            )
            if attrs.get("tags"):
                self.client.tag_resource(
                    resourceArn=repository["repositoryArn"], tags=to_tags(attrs["tags"])
                )
        return _outputs(repository)

    def delete(self, provider_ids: Dict[str, Any]) -> None:
        (name,) = self._require(provider_ids, "repositoryName")
        with aws_errors(REPOSITORY_NOT_FOUND):
            self.client.delete_repository(repositoryName=name, force=True)
        logger.debug(f"Deleted repository {name}")
