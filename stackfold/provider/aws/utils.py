from __future__ import annotations

import contextlib
from functools import cached_property
from typing import Any, Dict, Iterable, Iterator, List

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from stackfold.constants import AWS_THROTTLING_ERROR_CODES
from stackfold.errors import ProviderError, ResourceNotFound
from stackfold.provider.base import Provider

# botocore must not retry on its own, attempts are counted by the executor
CLIENT_CONFIG = Config(retries={"max_attempts": 1, "mode": "standard"})

_TRANSIENT_BOTOCORE_ERRORS = (
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)


def error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


@contextlib.contextmanager
def aws_errors(not_found: Iterable[str] = ()) -> Iterator[None]:
    """
    Translates botocore errors into provider errors.

    Throttling and connection errors are retryable. The error codes listed in
    `not_found` raise `ResourceNotFound`.

    Args:
        not_found (Iterable[str], optional): Error codes that mean the resource does not exist.
    """
    try:
        yield
    except ClientError as e:
        code = error_code(e)
        if code in not_found:
            raise ResourceNotFound(str(e)) from e
        raise ProviderError(str(e), retryable=code in AWS_THROTTLING_ERROR_CODES) from e
    except BotoCoreError as e:
        raise ProviderError(
            str(e), retryable=isinstance(e, _TRANSIENT_BOTOCORE_ERRORS)
        ) from e


def to_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{"Key": k, "Value": str(v)} for k, v in sorted(tags.items())]


def from_tags(tags: List[Dict[str, str]]) -> Dict[str, str]:
    return {t["Key"]: t["Value"] for t in tags or []}


class AWSProvider(Provider):
    """
    Base class of the providers backed by an AWS service.
    """

    service: str = ""

    # Whether create and delete block until the resource is ready or gone
    wait: bool = True

    @cached_property
    def session(self) -> boto3.Session:
        return boto3.Session(
            profile_name=self.config.profile, region_name=self.config.region
        )

    @cached_property
    def client(self) -> Any:
        return self.session.client(self.service, config=CLIENT_CONFIG)

    def _require(self, provider_ids: Dict[str, Any], *keys: str) -> List[Any]:
        missing = [k for k in keys if not provider_ids.get(k)]
        if missing:
            raise ProviderError(
                f"{self.kind}: missing provider identifier(s) {', '.join(missing)}"
            )
        return [provider_ids[k] for k in keys]
