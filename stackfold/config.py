from __future__ import annotations

import os
import re
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from ruamel.yaml import YAML

from stackfold.resource.model import NAME_PATTERN, ResourceDescriptor, ResourceId
from stackfold.utils import get_default_state_file

CONFIG_VERSION = "1.0"

INDEX_PLACEHOLDER = "${index}"


class StackfoldBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProviderConfig(StackfoldBaseModel):
    """
    Options handed to every provider adapter at construction, and used by the executor
    for retries, concurrency and deadlines.
    """

    region: str = Field(..., description="The region that selects the provider endpoint.")
    profile: Optional[str] = Field(
        None, description="The named credentials profile to use, if any."
    )
    kubeconfig: Optional[str] = Field(
        None,
        description="The kubeconfig file used by workload providers. Defaults to the standard lookup.",
    )
    retryLimit: int = Field(
        5, description="The maximum number of attempts for a retryable provider error."
    )
    concurrencyLimit: int = Field(
        4, description="The maximum number of operations running at the same time."
    )
    callTimeout: Optional[float] = Field(
        None,
        description="The deadline in seconds of a single provider call. None means no deadline.",
    )
    backoffInitial: float = Field(
        1.0, description="The delay in seconds before the first retry."
    )
    backoffMax: float = Field(30.0, description="The maximum delay between retries.")

    @field_validator("retryLimit", "concurrencyLimit", mode="before")
    def validate_positive(cls, v: int) -> int:
        if v is not None and int(v) < 1:
            raise ValueError("retryLimit and concurrencyLimit must be at least 1")
        return v

    @field_validator("callTimeout", mode="before")
    def validate_call_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and float(v) <= 0:
            raise ValueError("callTimeout must be greater than 0")
        return v

    @model_validator(mode="after")
    def check_backoff(self) -> ProviderConfig:
        if self.backoffInitial < 0:
            raise ValueError("backoffInitial must not be negative")
        if self.backoffMax < self.backoffInitial:
            raise ValueError("backoffMax must be greater than or equal to backoffInitial")
        return self


class StackSettings(ProviderConfig):
    """
    Represents the settings of a stack.
    """

    name: str = Field(..., description="The name of the stack.")
    stateFile: Optional[str] = Field(
        None,
        description="Where the state is persisted. Defaults to the stack data directory.",
    )

    @field_validator("name", mode="before")
    def validate_name(cls, v: str) -> str:
        if not isinstance(v, str) or not re.fullmatch(NAME_PATTERN, v) or len(v) > 63:
            raise ValueError(
                "Invalid stack name. It must contain no more than 63 characters, contain "
                "only lowercase alphanumeric characters or '-', start with an "
                "alphanumeric character, and end with an alphanumeric character."
            )
        return v

    def state_path(self) -> str:
        if self.stateFile:
            return os.path.abspath(os.path.expanduser(self.stateFile))
        return get_default_state_file(self.name)

    def provider_config(self) -> ProviderConfig:
        return ProviderConfig(
            **self.model_dump(include=set(ProviderConfig.model_fields))
        )


def _substitute_index(value: Any, index: int) -> Any:
    if isinstance(value, str):
        return value.replace(INDEX_PLACEHOLDER, str(index))
    if isinstance(value, Mapping):
        return {k: _substitute_index(v, index) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_substitute_index(v, index) for v in value]
    return value


class ResourceSpec(StackfoldBaseModel):
    """
    Represents one resource entry of the stack file.
    """

    kind: str = Field(..., description="The kind of the resource.")
    name: str = Field(..., description="The name of the resource.")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="The desired attributes of the resource."
    )
    dependsOn: List[str] = Field(
        default_factory=list,
        description="Resources, as kind.name, that must be applied first.",
    )
    before: List[str] = Field(
        default_factory=list,
        description="Resources, as kind.name, that must wait for this one.",
    )
    after: List[str] = Field(
        default_factory=list,
        description="Resources, as kind.name, this one must wait for.",
    )
    count: Optional[int] = Field(
        None,
        description="""Replicates the entry. Each copy is named <name>-<index> and every
    occurrence of ${index} in its attributes and dependencies is replaced by the index.
    For example:

    - kind: subnet
      name: private
      count: 2
      attributes:
        vpcId: ${network.main.vpcId}
        cidrBlock: 10.0.${index}.0/24
    """,
    )

    @field_validator("count", mode="before")
    def validate_count(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and int(v) < 1:
            raise ValueError("count must be greater than 0")
        return v

    @field_validator("dependsOn", "before", "after", mode="before")
    def validate_ids(cls, v: Optional[List[str]]) -> List[str]:
        if v is None:
            return []
        for item in v:
            ResourceId.parse(str(item).replace(INDEX_PLACEHOLDER, "0"))
        return list(v)

    def expand(self) -> List[ResourceDescriptor]:
        """
        Turns the entry into one descriptor per concrete instance.
        """
        if self.count is None:
            return [self._descriptor(self.name, self.attributes, None)]
        return [
            self._descriptor(f"{self.name}-{i}", _substitute_index(self.attributes, i), i)
            for i in range(self.count)
        ]

    def _descriptor(
        self, name: str, attributes: Dict[str, Any], index: Optional[int]
    ) -> ResourceDescriptor:
        def ids(values: List[str]) -> List[str]:
            return [v if index is None else _substitute_index(v, index) for v in values]

        return ResourceDescriptor(
            kind=self.kind,
            name=name,
            attributes=attributes,
            depends_on=ids(self.dependsOn),
            before=ids(self.before),
            after=ids(self.after),
        )


class Config(StackfoldBaseModel):
    """
    Configuration class of a stack file.
    """

    version: str = Field(..., description="The version of the configuration.")
    stack: StackSettings = Field(..., description="The settings of the stack.")
    resources: List[ResourceSpec] = Field(
        default_factory=list, description="The resources of the stack."
    )

    @field_validator("version", mode="before")
    def validate_version(cls, v: str) -> str:
        if not re.match(r"^\d+\.\d+$", str(v)):
            raise ValueError('version must be in the format "x.x"')
        return str(v)

    @model_validator(mode="after")
    def check_resource_names(self) -> Config:
        # No two resources of the same kind should have the same name
        seen = set()
        for descriptor in self.descriptors():
            if descriptor.id in seen:
                raise ValueError(f"Duplicate resource {descriptor.id} is not allowed")
            seen.add(descriptor.id)
        return self

    def descriptors(self) -> List[ResourceDescriptor]:
        result: List[ResourceDescriptor] = []
        for spec in self.resources:
            result.extend(spec.expand())
        return result


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def parse_yaml(yaml_str: str) -> Config:
    """
    Parse a YAML string and return a Config object.

    Args:
        yaml_str (str): The YAML string to parse.

    Returns:
        Config: The parsed Config object.

    Raises:
        ValueError: If the version is missing or not supported, or the content is invalid.
    """
    yaml = YAML()
    data = yaml.load(yaml_str)
    if not isinstance(data, Mapping):
        raise ValueError("Invalid configuration: expected a mapping at the top level.")
    data = _plain(data)

    version = data.get("version", None)
    if version is None:
        raise ValueError("Invalid configuration: The 'version' field is missing.")

    version = str(version)
    if not re.match(r"^\d+\.\d+$", version):
        raise ValueError('version must be in the format "x.x"')

    # Make sure the major version matches
    major_version, minor_version = map(int, version.split("."))
    tool_major_version, tool_minor_version = map(int, CONFIG_VERSION.split("."))

    if major_version < tool_major_version:
        raise ValueError(
            f"Invalid configuration: This tool supports versions starting from {tool_major_version}.0."
            " Please use an older version of the tool if you need to work with a previous configuration version."
        )
    elif major_version > tool_major_version:
        raise ValueError(
            f"Invalid configuration: Your current tool is too old. Please upgrade your tool to handle this configuration."
        )
    elif minor_version > tool_minor_version:  # No forward compatibility
        raise ValueError(
            f"Invalid configuration: This tool supports versions up to {tool_major_version}.{tool_minor_version}."
            " Please upgrade your tool to handle this configuration."
        )

    data["version"] = version
    return Config(**data)
