"""Deployment, DaemonSet and CredentialsRequest hooks for the AWS EFS CSI driver."""

from __future__ import annotations

import os
from typing import Any, Callable, Iterator

from csi_operator.clients import Clients

CLOUD_CRED_SECRET_NAME = "aws-efs-cloud-credentials"
METRICS_CERT_SECRET_NAME = "aws-efs-csi-driver-controller-metrics-serving-cert"
TRUSTED_CA_CONFIG_MAP = "aws-efs-csi-driver-trusted-ca-bundle"
STS_IAM_ROLE_ARN_ENV_VAR = "ROLEARN"
CLOUD_TOKEN_PATH = "/var/run/secrets/openshift/serviceaccount/token"
GENERATED_ASSET_BASE = "overlays/aws-efs/generated"
FIPS_ENABLED_PATH = "/proc/sys/crypto/fips_enabled"
AWS_EFS_CSI_DRIVER = "efs.csi.aws.com"
EFS_VOLUME_METRICS_DISABLED = "Disabled"

Hook = Callable[[dict[str, Any], dict[str, Any]], None]


def _driver_containers(workload: dict[str, Any]) -> Iterator[dict[str, Any]]:
    pod_spec = workload.get("spec", {}).get("template", {}).get("spec", {})
    for container in pod_spec.get("containers") or []:
        if container.get("name") == "csi-driver":
            yield container


def get_fips_enabled(path: str = FIPS_ENABLED_PATH) -> str:
    """Return "true" if the kernel reports FIPS mode, otherwise "false"."""
    try:
        with open(path, encoding="utf-8", newline="") as f:
            content = f.read()
    except OSError:
        return "false"
    return "true" if content == "1\n" else "false"


def _fips_hook(fips_enabled: str | None) -> Hook:
    value = get_fips_enabled() if fips_enabled is None else fips_enabled

    def hook(_spec: dict[str, Any], workload: dict[str, Any]) -> None:
        for container in _driver_containers(workload):
            container.setdefault("env", []).append({"name": "FIPS_ENABLED", "value": value})

    return hook


def with_fips_deployment_hook(fips_enabled: str | None = None) -> Hook:
    """Hook setting FIPS_ENABLED on the controller Deployment's driver container."""
    return _fips_hook(fips_enabled)


def with_fips_daemonset_hook(fips_enabled: str | None = None) -> Hook:
    """Hook setting FIPS_ENABLED on the node DaemonSet's driver container."""
    return _fips_hook(fips_enabled)


def _set_nested_field(obj: dict[str, Any], value: Any, *fields: str) -> None:
    current = obj
    for i, name in enumerate(fields[:-1]):
        child = current.get(name)
        if child is None:
            child = current[name] = {}
        elif not isinstance(child, dict):
            path = ".".join(fields[: i + 1])
            raise ValueError(f"value cannot be set because {path} is not a map")
        current = child
    current[fields[-1]] = value


def sts_credentials_request_hook(spec: dict[str, Any], credentials_request: dict[str, Any]) -> None:
    """Fill in the STS role ARN and token path when running in STS mode."""
    sts_role_arn = os.environ.get(STS_IAM_ROLE_ARN_ENV_VAR, "")
    if not sts_role_arn:
        return
    _set_nested_field(credentials_request, CLOUD_TOKEN_PATH, "spec", "cloudTokenPath")
    _set_nested_field(
        credentials_request, sts_role_arn, "spec", "providerSpec", "stsIAMRoleARN"
    )


def with_volume_metrics_daemonset_hook(clients: Clients) -> Hook:
    """Hook enabling EFS volume metrics options configured in the ClusterCSIDriver."""

    def hook(_spec: dict[str, Any], daemonset: dict[str, Any]) -> None:
        cluster_csi_driver = clients.cluster_csi_drivers.get(AWS_EFS_CSI_DRIVER)
        driver_config = cluster_csi_driver.get("spec", {}).get("driverConfig") or {}
        aws_config = driver_config.get("aws")
        metrics = aws_config.get("efsVolumeMetrics") if aws_config else None
        if not metrics or metrics.get("state") == EFS_VOLUME_METRICS_DISABLED:
            return

        recursive_walk = metrics.get("recursiveWalk")
        for container in _driver_containers(daemonset):
            args = container.setdefault("args", [])
            args.append("--vol-metrics-opt-in=true")
            if recursive_walk is not None:
                minutes = recursive_walk.get("refreshPeriodMinutes", 0) or 0
                if minutes > 0:
                    args.append(f"--vol-metrics-refresh-period={minutes}")
                rate_limit = recursive_walk.get("fsRateLimit", 0) or 0
                if rate_limit > 0:
                    args.append(f"--vol-metrics-fs-rate-limit={rate_limit}")

    return hook