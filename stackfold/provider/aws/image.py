from __future__ import annotations

import base64
import subprocess
from typing import Any, Dict, List, Optional

from stackfold.errors import ProviderError, ResourceNotFound
from stackfold.logger import logger
from stackfold.provider.aws.utils import AWSProvider, aws_errors
from stackfold.provider.base import ProviderResult
from stackfold.utils import random_str

IMAGE_NOT_FOUND = ("ImageNotFoundException", "RepositoryNotFoundException")


def repository_name(repository_url: str) -> str:
    """
    Extracts the repository name from a repository URL, e.g.
    `123456789012.dkr.ecr.us-west-2.amazonaws.com/app` gives `app`.
    """
    _, sep, name = repository_url.partition("/")
    if not sep or not name:
        raise ProviderError(f"Invalid repository URL '{repository_url}'")
    return name


def _docker(args: List[str]) -> None:
    try:
        subprocess.run(["docker", *args], check=True)
    except (subprocess.CalledProcessError, OSError) as e:
        raise ProviderError(f"docker {args[0]} failed: {e}") from e


class ImageProvider(AWSProvider):
    """
    Pushes an image built by the local docker daemon to an ECR repository.

    The push itself is a side effect without a resource behind it, only the tag in the
    repository is tracked. Deleting the resource deletes the tag.

    Attributes:
        source: The local image, e.g. `app` or `app:latest`.
        repositoryUrl: The URL of the target repository.
        tag: Optional. The tag to push. A random version tag is generated if omitted.

    Outputs `imageUri` and `imageTag`.
    """

    kind = "image"
    service = "ecr"

    def authenticate_docker(self) -> str:
        """
        Logs the docker client in to the registry of the configured region.

        Returns:
            str: The registry endpoint.
        """
        with aws_errors():
            token = self.client.get_authorization_token()
        auth = token["authorizationData"][0]
        username, password = (
            base64.b64decode(auth["authorizationToken"]).decode("utf-8").split(":", 1)
        )
        endpoint = auth["proxyEndpoint"]

        try:
            p = subprocess.Popen(
                ["docker", "login", "-u", username, "--password-stdin", endpoint],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise ProviderError(f"docker login failed: {e}") from e
        _, stderr = p.communicate(input=password.encode())
        if p.returncode != 0:
            raise ProviderError(f"Docker login failed: {stderr.decode()}")

        return endpoint

    def push(self, source: str, repository_url: str, tag: str) -> str:
        image = source if ":" in source.rsplit("/", 1)[-1] else f"{source}:latest"
        target = f"{repository_url}:{tag}"

        _docker(["tag", image, target])
        self.authenticate_docker()
        _docker(["push", target])

        logger.info(f"Successfully pushed {image} to {target}")
        return target

    def create(self, attrs: Dict[str, Any]) -> ProviderResult:
        repository_url = attrs["repositoryUrl"]
        tag = attrs.get("tag") or f"v{random_str()}"
        image_uri = self.push(attrs["source"], repository_url, tag)

        return ProviderResult(
            provider_ids={
                "repositoryName": repository_name(repository_url),
                "imageTag": tag,
            },
            outputs={"imageUri": image_uri, "imageTag": tag},
        )

    def identify(self, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not attrs.get("tag") or not attrs.get("repositoryUrl"):
            return None
        return {
            "repositoryName": repository_name(attrs["repositoryUrl"]),
            "imageTag": attrs["tag"],
        }

    def read(self, provider_ids: Dict[str, Any]) -> Dict[str, Any]:
        name, tag = self._require(provider_ids, "repositoryName", "imageTag")
        with aws_errors(IMAGE_NOT_FOUND):
            images = self.client.describe_images(
                repositoryName=name, imageIds=[{"imageTag": tag}]
            )["imageDetails"]
        if not images:
            raise ResourceNotFound(f"Image {name}:{tag} not found")
        return {"tag": tag, "imageDigest": images[0]["imageDigest"]}

    def update(
        self, provider_ids: Dict[str, Any], attrs: Dict[str, Any]
    ) -> Dict[str, Any]:
        # Pushing again moves the tag to the current local image
        _, tag = self._require(provider_ids, "repositoryName", "imageTag")
        image_uri = self.push(attrs["source"], attrs["repositoryUrl"], tag)
        return {"imageUri": image_uri, "imageTag": tag}

    def delete(self, provider_ids: Dict[str, Any]) -> None:
        name, tag = self._require(provider_ids, "repositoryName", "imageTag")
        with aws_errors(IMAGE_NOT_FOUND):
            response = self.client.batch_delete_image(
                repositoryName=name, imageIds=[{"imageTag": tag}]
            )

        failures = response.get("failures", [])
        if failures:
            if all(f.get("failureCode") == "ImageNotFound" for f in failures):
                raise ResourceNotFound(f"Image {name}:{tag} not found")
            raise ProviderError(
                f"Failed to delete image {name}:{tag}: {failures[0].get('failureReason')}"
            )
        logger.debug(f"Deleted image {name}:{tag}")
