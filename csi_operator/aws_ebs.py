"""Deployment and StorageClass hooks for the AWS EBS CSI driver."""

from __future__ import annotations

from typing import Any, Callable, Iterator, Mapping

from csi_operator.clients import Clients

CLOUD_CRED_SECRET_NAME = "ebs-cloud-credentials"
METRICS_CERT_SECRET_NAME = "aws-ebs-csi-driver-controller-metrics-serving-cert"
INFRASTRUCTURE_NAME = "cluster"
CLOUD_CONFIG_NAMESPACE = "openshift-config-managed"
CLOUD_CONFIG_NAME = "kube-cloud-config"
CA_BUNDLE_KEY = "ca-bundle.pem"
TRUSTED_CA_CONFIG_MAP = "aws-ebs-csi-driver-trusted-ca-bundle"
KMS_KEY_ID = "kmsKeyId"
OPERATOR_IMAGE_VERSION_ENV_VAR = "OPERATOR_IMAGE_VERSION"
GENERATED_ASSET_BASE = "overlays/aws-ebs/generated"
AWS_EBS_CSI_DRIVER = "ebs.csi.aws.com"
AWS_DRIVER_TYPE = "AWS"
DRIVER_CONTAINER = "csi-driver"

Hook = Callable[[Any, dict[str, Any]], None]


class MissingDriverContainerError(RuntimeError):
    """Raised when a Deployment has no csi-driver container to configure."""


def _containers(workload: dict[str, Any]) -> list[dict[str, Any]]:
    pod_spec = workload.setdefault("spec", {}).setdefault("template", {}).setdefault("spec", {})
    return pod_spec.setdefault("containers", [])


def _driver_containers(workload: dict[str, Any]) -> Iterator[dict[str, Any]]:
    for container in _containers(workload):
        if container.get("name") == DRIVER_CONTAINER:
            yield container


def _aws_platform_status(clients: Clients) -> dict[str, Any] | None:
    infra = clients.infrastructures.get(INFRASTRUCTURE_NAME)
    platform_status = (infra.get("status") or {}).get("platformStatus")
    if not platform_status:
        return None
    return platform_status.get("aws")


def custom_aws_ca_bundle(config_name: str, config_maps: Mapping[str, dict[str, Any]]) -> str:
    """Return config_name if that ConfigMap exists and holds a CA bundle, else ""."""
    config_map = config_maps.get(config_name)
    if config_map is None:
        return ""
    if CA_BUNDLE_KEY not in (config_map.get("data") or {}):
        return ""
    return config_name


def custom_aws_ca_bundle_hook(clients: Clients, config_map_name: str) -> Hook:
    """Hook projecting a custom CA bundle ConfigMap into the csi-driver container."""

    def hook(_spec: Any, deployment: dict[str, Any]) -> None:
        namespace = clients.control_plane_namespace
        config_maps = {
            cm.get("metadata", {}).get("name", ""): cm
            for cm in clients.control_plane_config_maps().list(namespace)
        }
        config_name = custom_aws_ca_bundle(config_map_name, config_maps)
        if not config_name:
            return

        pod_spec = deployment["spec"]["template"]["spec"]
        pod_spec.setdefault("volumes", []).append(
            {"name": "ca-bundle", "configMap": {"name": config_name}}
        )
        for container in _driver_containers(deployment):
            container.setdefault("env", []).append(
                {"name": "AWS_CA_BUNDLE", "value": "/etc/ca/ca-bundle.pem"}
            )
            container.setdefault("volumeMounts", []).append(
                {"name": "ca-bundle", "mountPath": "/etc/ca", "readOnly": True}
            )
            return
        raise MissingDriverContainerError(
            "could not use custom CA bundle because the csi-driver container "
            "is missing from the deployment"
        )

    return hook


def with_custom_endpoint(clients: Clients) -> Hook:
    """Hook setting AWS_EC2_ENDPOINT from the Infrastructure's ec2 service endpoint."""

    def hook(_spec: Any, deployment: dict[str, Any]) -> None:
        aws = _aws_platform_status(clients)
        if aws is None:
            return
        ec2_endpoint = ""
        for endpoint in aws.get("serviceEndpoints") or []:
            if endpoint.get("name") == "ec2":
                ec2_endpoint = endpoint.get("url", "")
        if not ec2_endpoint:
            return
        for container in _driver_containers(deployment):
            container.setdefault("env", []).append(
                {"name": "AWS_EC2_ENDPOINT", "value": ec2_endpoint}
            )
            return

    return hook


def with_custom_tags(clients: Clients) -> Hook:
    """Hook passing the Infrastructure's resource tags as --extra-tags."""

    def hook(_spec: Any, deployment: dict[str, Any]) -> None:
        aws = _aws_platform_status(clients)
        if aws is None:
            return
        user_tags = aws.get("resourceTags") or []
        if not user_tags:
            return
        tags = ",".join(f"{tag.get('key', '')}={tag.get('value', '')}" for tag in user_tags)
        argument = f"--extra-tags={tags}"
        for container in _driver_containers(deployment):
            container.setdefault("args", []).append(argument)

    return hook


def with_aws_region(clients: Clients) -> Hook:
    """Hook setting AWS_REGION from the Infrastructure's AWS platform status."""

    def hook(_spec: Any, deployment: dict[str, Any]) -> None:
        aws = _aws_platform_status(clients)
        if aws is None:
            return
        region = aws.get("region") or ""
        if not region:
            return
        for container in _driver_containers(deployment):
            container.setdefault("env", []).append({"name": "AWS_REGION", "value": region})

    return hook


def with_kms_key_hook(clients: Clients) -> Hook:
    """Hook setting the StorageClass kmsKeyId from the ClusterCSIDriver's KMS key ARN."""

    def hook(_spec: Any, storage_class: dict[str, Any]) -> None:
        ccd = clients.cluster_csi_drivers.get(storage_class.get("provisioner", ""))
        driver_config = (ccd.get("spec") or {}).get("driverConfig") or {}
        aws = driver_config.get("aws")
        if driver_config.get("driverType") != AWS_DRIVER_TYPE or aws is None:
            return
        arn = aws.get("kmsKeyARN") or ""
        if not arn:
            return
        parameters = storage_class.get("parameters")
        if parameters is None:
            parameters = storage_class["parameters"] = {}
        parameters[KMS_KEY_ID] = arn

    return hook


def with_volume_attributes_class_hook() -> Hook:
    """Hook enabling the VolumeAttributesClass feature gate in provisioner and resizer."""
    new_arg = "--feature-gates=VolumeAttributesClass=true"

    def hook(_spec: Any, deployment: dict[str, Any]) -> None:
        for container in _containers(deployment):
            if container.get("name") in ("csi-provisioner", "csi-resizer"):
                container.setdefault("args", []).append(new_arg)

    return hook