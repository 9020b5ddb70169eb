"""AWS session for the run.

Credential federation itself (OIDC, the CI's credential action) is outside
this package; here the configured role is assumed only when the ambient
credentials do not already belong to it.
"""

from __future__ import annotations

import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from src.release_shared.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _role_name(role_arn: str) -> str:
    # arn:aws:iam::123456789012:role/path/name -> name
    return role_arn.rsplit("/", 1)[-1]


def _already_assumed(caller_arn: str, role_arn: str) -> bool:
    # arn:aws:sts::123456789012:assumed-role/name/session
    if ":assumed-role/" not in caller_arn:
        return False
    return caller_arn.split(":assumed-role/", 1)[1].split("/", 1)[0] == _role_name(role_arn)


def aws_session(
    region: str,
    role_arn: str = "",
    session_name: str = "release-pipeline",
    base_session: boto3.session.Session | None = None,
) -> boto3.session.Session:
    """Return a boto3 session acting as *role_arn* in *region*.

    Raises:
        ConfigurationError: If no usable credentials are available or the
            role cannot be assumed.
    """
    base = base_session or boto3.session.Session(region_name=region)
    if not role_arn:
        return base
    try:
        sts = base.client("sts", region_name=region)
        caller = sts.get_caller_identity().get("Arn", "")
        if _already_assumed(caller, role_arn):
            logger.info("Ambient credentials already act as %s", _role_name(role_arn))
            return base
        response = sts.assume_role(RoleArn=role_arn, RoleSessionName=session_name)
    except (ClientError, BotoCoreError) as exc:
        raise ConfigurationError(f"Cannot assume role {role_arn}: {exc}") from exc

    creds = response["Credentials"]
    logger.info("Assumed role %s", role_arn)
    return boto3.session.Session(
        aws_access_key_id=creds["AccessKeyId"],
        aws_secret_access_key=creds["SecretAccessKey"],
        aws_session_token=creds["SessionToken"],
        region_name=region,
    )
