"""Thin boto3-backed provider for a handful of AWS resource types."""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import unquote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from converge.providers.base import ProviderClient
from converge.state.models import RemoteState
from converge.utils.errors import ErrorContext, ProviderFatalError, error_handler
from converge.utils.logging import get_logger
from converge.utils.retry import RetryStrategy

logger = get_logger(__name__)

# Retries are done by the reconciler, so botocore makes a single attempt
CLIENT_CONFIG = Config(retries={"max_attempts": 1, "mode": "standard"})


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "Unknown")


def _tags_to_list(tags: Optional[Dict[str, Any]]) -> list:
    return [{"Key": key, "Value": str(value)} for key, value in (tags or {}).items()]


def _tags_from_list(tag_set: list) -> Dict[str, str]:
    return {tag["Key"]: tag["Value"] for tag in tag_set}


def normalize_policy(policy: Any) -> Any:
    """Policy documents come back URL-encoded or decoded depending on the call."""
    if isinstance(policy, str):
        return json.loads(unquote(policy))
    return policy


class ResourceHandler(ABC):
    """CRUD calls for one resource type."""

    resource_type = ""

    def __init__(self, provider: "AwsProvider"):
        self.provider = provider

    @abstractmethod
    def describe(self, physical_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def create(self, attributes: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def update(self, physical_id: str, attributes: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def delete(self, physical_id: str) -> None:
        pass

    def _require(self, attributes: Dict[str, Any], key: str) -> Any:
        value = attributes.get(key)
        if value in (None, ""):
            raise ProviderFatalError(
                f"{self.resource_type} requires attribute '{key}'",
                context=ErrorContext(resource_type=self.resource_type)
            )
        return value

    def _requires_replacement(self, attribute: str, physical_id: str) -> ProviderFatalError:
        return ProviderFatalError(
            f"Changing '{attribute}' of {self.resource_type} '{physical_id}' requires replacement",
            context=ErrorContext(resource_type=self.resource_type, operation="update"),
            suggestions=["Destroy the resource first, or give the new one a different logical name"]
        )


class S3BucketHandler(ResourceHandler):
    """aws_s3_bucket: attributes ``bucket`` and ``tags``."""

    resource_type = "aws_s3_bucket"

    def __init__(self, provider: "AwsProvider"):
        super().__init__(provider)
        self.s3_client = provider.client("s3")

    def describe(self, physical_id: str) -> Optional[Dict[str, Any]]:
        try:
            self.s3_client.head_bucket(Bucket=physical_id)
        except ClientError as e:
            if _error_code(e) in ("404", "NoSuchBucket", "NotFound"):
                return None
            raise

        try:
            tags_response = self.s3_client.get_bucket_tagging(Bucket=physical_id)
            tags = _tags_from_list(tags_response.get("TagSet", []))
        except ClientError as e:
            if _error_code(e) != "NoSuchTagSet":
                raise
            tags = {}

        return {
            "bucket": physical_id,
            "tags": tags,
            "id": physical_id,
            "arn": f"arn:aws:s3:::{physical_id}",
        }

    def create(self, attributes: Dict[str, Any]) -> str:
        bucket_name = self._require(attributes, "bucket")
        region = self.provider.region

        create_params = {"Bucket": bucket_name}
        # us-east-1 rejects an explicit location constraint
        if region and region != "us-east-1":
            create_params["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            self.s3_client.create_bucket(**create_params)
        except ClientError as e:
            # A create retried after a partial failure finds the bucket it made
            if _error_code(e) != "BucketAlreadyOwnedByYou":
                raise
            logger.info(f"Bucket {bucket_name} already exists and is owned by this account")

        if attributes.get("tags"):
            self.provider.after_write(
                self.s3_client.put_bucket_tagging,
                description=f"tag bucket {bucket_name}",
                Bucket=bucket_name,
                Tagging={"TagSet": _tags_to_list(attributes["tags"])}
            )
        return bucket_name

    def update(self, physical_id: str, attributes: Dict[str, Any]) -> str:
        if attributes.get("bucket", physical_id) != physical_id:
            raise self._requires_replacement("bucket", physical_id)

        if attributes.get("tags"):
            self.s3_client.put_bucket_tagging(
                Bucket=physical_id,
                Tagging={"TagSet": _tags_to_list(attributes["tags"])}
            )
        else:
            self.s3_client.delete_bucket_tagging(Bucket=physical_id)
        return physical_id

    def delete(self, physical_id: str) -> None:
        try:
            self.s3_client.delete_bucket(Bucket=physical_id)
        except ClientError as e:
            if _error_code(e) != "NoSuchBucket":
                raise


class IAMRoleHandler(ResourceHandler):
    """aws_iam_role: ``name``, ``assume_role_policy``, ``description``, ``tags``."""

    resource_type = "aws_iam_role"

    def __init__(self, provider: "AwsProvider"):
        super().__init__(provider)
        self.iam_client = provider.client("iam")

    def describe(self, physical_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.iam_client.get_role(RoleName=physical_id)
        except ClientError as e:
            if _error_code(e) == "NoSuchEntity":
                return None
            raise

        role = response["Role"]
        return {
            "name": role["RoleName"],
            "assume_role_policy": normalize_policy(role.get("AssumeRolePolicyDocument")),
            "description": role.get("Description", ""),
            "tags": _tags_from_list(role.get("Tags", [])),
            "id": role["RoleName"],
            "arn": role["Arn"],
            "unique_id": role.get("RoleId"),
        }

    def create(self, attributes: Dict[str, Any]) -> str:
        role_name = self._require(attributes, "name")
        policy = self._require(attributes, "assume_role_policy")

        params = {
            "RoleName": role_name,
            "AssumeRolePolicyDocument": json.dumps(normalize_policy(policy)),
        }
        if attributes.get("description"):
            params["Description"] = attributes["description"]
        if attributes.get("tags"):
            params["Tags"] = _tags_to_list(attributes["tags"])

        self.iam_client.create_role(**params)
        return role_name

    def update(self, physical_id: str, attributes: Dict[str, Any]) -> str:
        if attributes.get("name", physical_id) != physical_id:
            raise self._requires_replacement("name", physical_id)

        if "assume_role_policy" in attributes:
            self.iam_client.update_assume_role_policy(
                RoleName=physical_id,
                PolicyDocument=json.dumps(normalize_policy(attributes["assume_role_policy"]))
            )
        if "description" in attributes:
            self.iam_client.update_role(
                RoleName=physical_id,
                Description=attributes["description"] or ""
            )
        if attributes.get("tags"):
            self.iam_client.tag_role(RoleName=physical_id, Tags=_tags_to_list(attributes["tags"]))
        return physical_id

    def delete(self, physical_id: str) -> None:
        try:
            self.iam_client.delete_role(RoleName=physical_id)
        except ClientError as e:
            if _error_code(e) != "NoSuchEntity":
                raise


class CodeDeployAppHandler(ResourceHandler):
    """aws_codedeploy_app: ``name`` and ``compute_platform``."""

    resource_type = "aws_codedeploy_app"

    def __init__(self, provider: "AwsProvider"):
        super().__init__(provider)
        self.codedeploy_client = provider.client("codedeploy")

    def describe(self, physical_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.codedeploy_client.get_application(applicationName=physical_id)
        except ClientError as e:
            if _error_code(e) == "ApplicationDoesNotExistException":
                return None
            raise

        application = response["application"]
        return {
            "name": application["applicationName"],
            "compute_platform": application.get("computePlatform", "Server"),
            "id": application["applicationName"],
            "application_id": application.get("applicationId"),
        }

    def create(self, attributes: Dict[str, Any]) -> str:
        name = self._require(attributes, "name")
        self.codedeploy_client.create_application(
            applicationName=name,
            computePlatform=attributes.get("compute_platform", "Server")
        )
        return name

    def update(self, physical_id: str, attributes: Dict[str, Any]) -> str:
        current = self.describe(physical_id) or {}
        platform = attributes.get("compute_platform")
        if platform and platform != current.get("compute_platform", platform):
            raise self._requires_replacement("compute_platform", physical_id)

        new_name = attributes.get("name", physical_id)
        if new_name != physical_id:
            self.codedeploy_client.update_application(
                applicationName=physical_id,
                newApplicationName=new_name
            )
        return new_name

    def delete(self, physical_id: str) -> None:
        self.codedeploy_client.delete_application(applicationName=physical_id)


HANDLERS = {
    handler.resource_type: handler
    for handler in (S3BucketHandler, IAMRoleHandler, CodeDeployAppHandler)
}


class AwsProvider(ProviderClient):
    """Provider backed by boto3 clients.

    Every botocore failure is classified by the error handler into a
    ProviderTransientError or ProviderFatalError.
    """

    name = "aws"

    def __init__(
        self,
        region: Optional[str] = None,
        profile: Optional[str] = None,
        session=None,
        clients: Optional[Dict[str, Any]] = None,
        retry_strategy: Optional[RetryStrategy] = None
    ):
        """Initialize the provider.

        Args:
            region: AWS region
            profile: Named AWS profile
            session: Preconfigured boto3 session
            clients: Prebuilt clients by service name, used instead of the session's
            retry_strategy: Backoff for calls that follow a write to the same object
        """
        self.session = session or boto3.Session(profile_name=profile, region_name=region)
        self.region = region or self.session.region_name
        self._clients = dict(clients or {})
        self._handlers: Dict[str, ResourceHandler] = {}
        self.retry_strategy = retry_strategy or RetryStrategy()

    def client(self, service: str):
        if service not in self._clients:
            self._clients[service] = self.session.client(
                service, region_name=self.region, config=CLIENT_CONFIG
            )
        return self._clients[service]

    def supports(self, resource_type: str) -> bool:
        return resource_type in HANDLERS

    def handler(self, resource_type: str) -> ResourceHandler:
        if resource_type not in HANDLERS:
            raise ProviderFatalError(
                f"Resource type '{resource_type}' is not supported by the aws provider",
                context=ErrorContext(resource_type=resource_type),
                suggestions=[f"Supported types: {', '.join(sorted(HANDLERS))}"]
            )
        if resource_type not in self._handlers:
            self._handlers[resource_type] = HANDLERS[resource_type](self)
        return self._handlers[resource_type]

    def describe(self, resource_type: str, physical_id: str) -> Optional[RemoteState]:
        attributes = self._call(resource_type, "describe", physical_id)
        if attributes is None:
            return None
        return RemoteState(type=resource_type, physical_id=physical_id, attributes=attributes)

    def create(self, resource_type: str, attributes: Dict[str, Any]) -> RemoteState:
        physical_id = self._call(resource_type, "create", attributes)
        logger.debug(f"Created {resource_type} {physical_id}")
        return self._read_back(resource_type, physical_id, attributes)

    def update(self, resource_type: str, physical_id: str, attributes: Dict[str, Any]) -> RemoteState:
        physical_id = self._call(resource_type, "update", physical_id, attributes)
        return self._read_back(resource_type, physical_id, attributes)

    def delete(self, resource_type: str, physical_id: str) -> None:
        self._call(resource_type, "delete", physical_id)

    def after_write(self, func, description: str = "follow-up call", **kwargs):
        """Call func right after a write, retrying while the new object is not visible yet.

        Retrying here keeps the write itself from being repeated.
        """
        def attempt():
            try:
                return func(**kwargs)
            except ClientError as e:
                raise error_handler.handle_exception(e, after_write=True) from e

        return self.retry_strategy.execute_with_retry(attempt, description=description)

    def _read_back(self, resource_type: str, physical_id: str, attributes: Dict[str, Any]) -> RemoteState:
        remote = self.describe(resource_type, physical_id)
        if remote is None:
            # Writes are not always visible to reads straight away
            logger.warning(f"{resource_type} {physical_id} not readable yet; recording declared attributes")
            return RemoteState(
                type=resource_type,
                physical_id=physical_id,
                attributes={**attributes, "id": physical_id}
            )
        return remote

    def _call(self, resource_type: str, operation: str, *args):
        handler = self.handler(resource_type)
        try:
            return getattr(handler, operation)(*args)
        except (ClientError, BotoCoreError) as e:
            context = ErrorContext(resource_type=resource_type, operation=operation)
            raise error_handler.handle_exception(e, context=context) from e
