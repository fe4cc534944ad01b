import json
from typing import Any

import boto3
import pytest
from moto import mock_aws

from stackfold.config import ProviderConfig
from stackfold.errors import ProviderError, ResourceNotFound
from stackfold.provider.aws import RoleAttachmentProvider

ASSUME_ROLE_POLICY = json.dumps(
    {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": "eks.amazonaws.com"},
                "Action": "sts:AssumeRole",
            }
        ],
    }
)


def _policy(iam: Any, name: str) -> str:
    document = json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [{"Effect": "Allow", "Action": "ecr:*", "Resource": "*"}],
        }
    )
    return iam.create_policy(PolicyName=name, PolicyDocument=document)["Policy"]["Arn"]


@mock_aws
def test_role_attachment_lifecycle() -> None:
    iam = boto3.client("iam", region_name="us-east-1")
    iam.create_role(RoleName="nodes", AssumeRolePolicyDocument=ASSUME_ROLE_POLICY)
    other_arn = _policy(iam, "other")
    policy_arn = _policy(iam, "registry")
    iam.attach_role_policy(RoleName="nodes", PolicyArn=other_arn)

    provider = RoleAttachmentProvider(ProviderConfig(region="us-east-1"))
    attrs = {"roleName": "nodes", "policyArn": policy_arn}

    result = provider.create(attrs)
    assert result.provider_ids == attrs
    assert provider.identify(attrs) == attrs
    assert provider.read(result.provider_ids) == attrs

    with pytest.raises(ProviderError):
        provider.update(result.provider_ids, attrs)

    provider.delete(result.provider_ids)
    with pytest.raises(ResourceNotFound):
        provider.read(result.provider_ids)

    attached = iam.list_attached_role_policies(RoleName="nodes")["AttachedPolicies"]
    assert [p["PolicyArn"] for p in attached] == [other_arn]


@mock_aws
def test_role_attachment_of_missing_role() -> None:
    provider = RoleAttachmentProvider(ProviderConfig(region="us-east-1"))

    with pytest.raises(ResourceNotFound):
        provider.read(
            {"roleName": "missing", "policyArn": "arn:aws:iam::aws:policy/ReadOnlyAccess"}
        )
