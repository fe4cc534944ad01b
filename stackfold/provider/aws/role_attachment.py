from __future__ import annotations

from typing import Any, Dict, Optional

from stackfold.errors import ProviderError, ResourceNotFound
from stackfold.logger import logger
from stackfold.provider.aws.utils import AWSProvider, aws_errors
from stackfold.provider.base import ProviderResult

ROLE_NOT_FOUND = ("NoSuchEntity",)


class RoleAttachmentProvider(AWSProvider):
    """
    Attaches a managed policy to an IAM role. An attachment has no identity of its own,
    it is identified by the role and the policy.
    """

    kind = "role_attachment"
    service = "iam"

    def create(self, attrs: Dict[str, Any]) -> ProviderResult:
        role_name = attrs["roleName"]
        policy_arn = attrs["policyArn"]
        with aws_errors():
            self.client.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        logger.debug(f"Attached {policy_arn} to {role_name}")

        ids = {"roleName": role_name, "policyArn": policy_arn}
        return ProviderResult(provider_ids=ids, outputs=dict(ids))

    def identify(self, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not attrs.get("roleName") or not attrs.get("policyArn"):
            return None
        return {"roleName": attrs["roleName"], "policyArn": attrs["policyArn"]}

    def read(self, provider_ids: Dict[str, Any]) -> Dict[str, Any]:
        role_name, policy_arn = self._require(provider_ids, "roleName", "policyArn")
        paginator = self.client.get_paginator("list_attached_role_policies")
        with aws_errors(ROLE_NOT_FOUND):
            for page in paginator.paginate(RoleName=role_name):
                for policy in page["AttachedPolicies"]:
                    if policy["PolicyArn"] == policy_arn:
                        return {"roleName": role_name, "policyArn": policy_arn}
        raise ResourceNotFound(f"{policy_arn} is not attached to {role_name}")

    def update(
        self, provider_ids: Dict[str, Any], attrs: Dict[str, Any]
    ) -> Dict[str, Any]:
        raise ProviderError("Role attachments cannot be updated in place")

    def delete(self, provider_ids: Dict[str, Any]) -> None:
        role_name, policy_arn = self._require(provider_ids, "roleName", "policyArn")
        with aws_errors(ROLE_NOT_FOUND):
            self.client.detach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        logger.debug(f"Detached {policy_arn} from {role_name}")
