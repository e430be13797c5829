"""Deployment, DaemonSet, StorageClass and snapshot hooks for the Azure Disk CSI driver."""

from __future__ import annotations

import os
from typing import Any, Callable, Iterator, Mapping

from csi_operator.clients import Clients

CLOUD_CRED_SECRET_NAME = "azure-disk-credentials"
METRICS_CERT_SECRET_NAME = "azure-disk-csi-driver-controller-metrics-serving-cert"
INFRASTRUCTURE_NAME = "cluster"
CLOUD_CONFIG_NAME = "kube-cloud-config"
CA_BUNDLE_KEY = "ca-bundle.pem"
TRUSTED_CA_CONFIG_MAP = "azure-disk-csi-driver-trusted-ca-bundle"
CONFIG_MAP_NAME = "cloud-provider-config"
OPENSHIFT_DEFAULT_CLOUD_CONFIG_NAMESPACE = "openshift-config"
GENERATED_ASSET_BASE = "overlays/azure-disk/generated"
OPERATOR_IMAGE_VERSION_ENV_VAR = "OPERATOR_IMAGE_VERSION"
CCM_OPERATOR_IMAGE_ENV_NAME = "CLUSTER_CLOUD_CONTROLLER_MANAGER_OPERATOR_IMAGE"
ARO_SECRET_PROVIDER_CLASS_ENV_NAME = "ARO_HCP_SECRET_PROVIDER_CLASS_FOR_DISK"

CONFIG_ENV_NAME = "AZURE_ENVIRONMENT_FILEPATH"
AZURE_STACK_CLOUD_CONFIG = "/etc/azure/azurestackcloud.json"
POD_AZURE_CFG_VOLUME_NAME = "cloud-config"
DISK_ENCRYPTION_SET_ID = "diskEncryptionSetID"
LOCAL_CLOUD_CONFIG_NAME = "azure-cloud-config"
INCREMENTAL_SNAPSHOT_KEY = "incremental"

AZURE_DISK_CSI_DRIVER = "disk.csi.azure.com"
AZURE_DRIVER_TYPE = "Azure"
AZURE_STACK_CLOUD = "AzureStackCloud"
DRIVER_CONTAINER = "csi-driver"

Hook = Callable[[Any, dict[str, Any]], None]


def _pod_spec(workload: dict[str, Any]) -> dict[str, Any]:
    return workload.setdefault("spec", {}).setdefault("template", {}).setdefault("spec", {})


def _containers(pod_spec: dict[str, Any]) -> Iterator[dict[str, Any]]:
    yield from pod_spec.get("containers") or []


def running_in_azure_stack_hub(infra: dict[str, Any]) -> bool:
    """Return True if the Infrastructure reports the Azure Stack Hub cloud."""
    platform_status = (infra.get("status") or {}).get("platformStatus") or {}
    azure = platform_status.get("azure")
    return bool(azure) and azure.get("cloudName") == AZURE_STACK_CLOUD


def inject_env_and_mounts(pod_spec: dict[str, Any]) -> None:
    """Point the csi-driver container at the Azure Stack Hub endpoints file."""
    for container in _containers(pod_spec):
        if container.get("name") != DRIVER_CONTAINER:
            continue
        container.setdefault("env", []).append(
            {"name": CONFIG_ENV_NAME, "value": AZURE_STACK_CLOUD_CONFIG}
        )
        container.setdefault("volumeMounts", []).append(
            {
                "name": POD_AZURE_CFG_VOLUME_NAME,
                "mountPath": AZURE_STACK_CLOUD_CONFIG,
                "subPath": "endpoints",
            }
        )
        break


def _stack_hub_hook(running_on_stack_hub: bool) -> Hook:
    def hook(_spec: Any, workload: dict[str, Any]) -> None:
        if running_on_stack_hub:
            inject_env_and_mounts(_pod_spec(workload))

    return hook


def with_azure_stack_hub_deployment_hook(running_on_stack_hub: bool) -> Hook:
    """Deployment hook injecting Azure Stack Hub configuration when needed."""
    return _stack_hub_hook(running_on_stack_hub)


def with_azure_stack_hub_daemonset_hook(running_on_stack_hub: bool) -> Hook:
    """DaemonSet hook injecting Azure Stack Hub configuration when needed."""
    return _stack_hub_hook(running_on_stack_hub)


def stack_hub_storage_class_hook() -> Hook:
    """StorageClass hook forcing the Premium_LRS SKU used on Azure Stack Hub."""

    def hook(_spec: Any, storage_class: dict[str, Any]) -> None:
        parameters = storage_class.get("parameters")
        if parameters is None:
            parameters = storage_class["parameters"] = {}
        parameters["skuname"] = "Premium_LRS"

    return hook


def kms_key_hook(clients: Clients) -> Hook:
    """StorageClass hook setting diskEncryptionSetID from the ClusterCSIDriver.

    Raises NotFoundError when no ClusterCSIDriver matches the provisioner.
    """

    def hook(_spec: Any, storage_class: dict[str, Any]) -> None:
        ccd = clients.cluster_csi_drivers.get(storage_class.get("provisioner", ""))
        driver_config = (ccd.get("spec") or {}).get("driverConfig") or {}
        azure = driver_config.get("azure")
        if driver_config.get("driverType") != AZURE_DRIVER_TYPE or azure is None:
            return
        encryption_set = azure.get("diskEncryptionSet")
        if encryption_set is None:
            return
        parameters = storage_class.get("parameters")
        if parameters is None:
            parameters = storage_class["parameters"] = {}
        parameters[DISK_ENCRYPTION_SET_ID] = (
            f"/subscriptions/{encryption_set.get('subscriptionID', '')}"
            f"/resourceGroups/{encryption_set.get('resourceGroup', '')}"
            f"/providers/Microsoft.Compute/diskEncryptionSets/{encryption_set.get('name', '')}"
        )

    return hook


def volume_snapshot_class_hook() -> Hook:
    """VolumeSnapshotClass hook disabling incremental snapshots."""

    def hook(_spec: Any, snapshot_class: dict[str, Any]) -> None:
        parameters = snapshot_class.get("parameters")
        if parameters is None:
            parameters = snapshot_class["parameters"] = {}
        parameters[INCREMENTAL_SNAPSHOT_KEY] = "false"

    return hook


def with_aro_csi_volume(secret_provider_class: str) -> Hook:
    """Deployment hook mounting ARO certificates from the secrets-store CSI driver.

    Raises IndexError when the Deployment has no containers.
    """

    def hook(_spec: Any, deployment: dict[str, Any]) -> None:
        pod_spec = _pod_spec(deployment)
        first = pod_spec.setdefault("containers", [])[0]
        first.setdefault("volumeMounts", []).append(
            {"name": "azure-disk", "mountPath": "/mnt/certs", "readOnly": True}
        )
        pod_spec.setdefault("volumes", []).append(
            {
                "name": "azure-disk",
                "csi": {
                    "driver": "secrets-store.csi.k8s.io",
                    "readOnly": True,
                    "volumeAttributes": {"secretProviderClass": secret_provider_class},
                },
            }
        )

    return hook


def extra_replacements(environ: Mapping[str, str] | None = None) -> list[str]:
    """Return placeholder/value pairs, flattened, for asset templating."""
    env = os.environ if environ is None else environ
    return [
        "${CLUSTER_CLOUD_CONTROLLER_MANAGER_OPERATOR_IMAGE}",
        env.get(CCM_OPERATOR_IMAGE_ENV_NAME, ""),
        "${ENABLE_AZURE_WORKLOAD_IDENTITY}",
        "true",
    ]