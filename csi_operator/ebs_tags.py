"""Helpers for tagging AWS EBS volumes with the cluster's resource tags."""

from __future__ import annotations

import base64
import configparser
import copy
import enum
import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

AWS_EBS_SECRET_NAMESPACE = "openshift-cluster-csi-drivers"
AWS_EBS_SECRET_NAME = "ebs-cloud-credentials"
DRIVER_NAME = "ebs.csi.aws.com"
TAG_HASH_ANNOTATION_KEY = "ebs.openshift.io/volume-tags-hash"
BATCH_SIZE = 50
AWS_ERROR_VOLUME_NOT_FOUND = "InvalidVolume.NotFound"
DEFAULT_RESYNC_PERIOD = 30 * 60.0
ROLE_SESSION_NAME = "aws-ebs-csi-driver-operator"

_CREDENTIALS_SECTION = "default"
_ROOT_SECTION = "__root__"
_RAW_URL_BASE64 = re.compile(rb"[A-Za-z0-9_-]*")


class UpdateType(str, enum.Enum):
    """How the volumes of a queue item are tagged."""

    BATCH = "batch"
    INDIVIDUAL = "individual"


@dataclass(eq=False)
class PVUpdateItem:
    """A unit of work for the tags queue: PV names and how to update them."""

    update_type: UpdateType
    pv_names: list[str] = field(default_factory=list)


def new_and_updated_tags(resource_tags: Iterable[dict[str, Any]]) -> list[dict[str, str]]:
    """Convert cluster resource tags into EC2 tag structures."""
    return [
        {"Key": tag.get("key", ""), "Value": tag.get("value", "")}
        for tag in resource_tags
    ]


def pvs_to_resource_ids(volumes: Iterable[dict[str, Any]]) -> list[str]:
    """Return the EBS volume IDs (CSI volume handles) of the given PVs."""
    return [volume["spec"]["csi"]["volumeHandle"] for volume in volumes]


def compute_tags_hash(resource_tags: Iterable[dict[str, Any]]) -> str:
    """Return the SHA-256 hex digest of the tags sorted by key."""
    ordered = sorted(resource_tags, key=lambda tag: tag.get("key", ""))
    text = "".join(f"{tag.get('key', '')}={tag.get('value', '')};" for tag in ordered)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def set_pv_tag_hash(pv: dict[str, Any], tag_hash: str) -> dict[str, Any]:
    """Return a copy of the PV with the tag hash annotation set."""
    pv_copy = copy.deepcopy(pv)
    metadata = pv_copy.get("metadata")
    if metadata is None:
        metadata = pv_copy["metadata"] = {}
    annotations = metadata.get("annotations")
    if annotations is None:
        annotations = metadata["annotations"] = {}
    annotations[TAG_HASH_ANNOTATION_KEY] = tag_hash
    return pv_copy


def get_pv_tag_hash(pv: dict[str, Any]) -> str:
    """Return the tag hash stored on the PV, or "" if tags were never applied."""
    annotations = (pv.get("metadata") or {}).get("annotations") or {}
    return annotations.get(TAG_HASH_ANNOTATION_KEY, "")


def pv_names(*args: dict[str, Any] | None) -> list[str]:
    """Return the names of the given PVs, skipping missing ones."""
    return [(pv.get("metadata") or {}).get("name", "") for pv in args if pv is not None]


def parse_credentials(data: bytes | str) -> tuple[str, str]:
    """Return (role_arn, web_identity_token_file) from an INI credentials file.

    Raises ValueError when the data cannot be parsed or either value is empty.
    """
    text = data.decode("utf-8") if isinstance(data, bytes) else data
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    try:
        try:
            parser.read_string(text)
        except configparser.MissingSectionHeaderError:
            parser = configparser.ConfigParser(interpolation=None, strict=False)
            parser.optionxform = str  # type: ignore[assignment,method-assign]
            parser.read_string(f"[{_ROOT_SECTION}]\n{text}")
    except configparser.Error as exc:
        raise ValueError(f"error parsing credentials data: {exc}") from exc

    role_arn = ""
    token_file = ""
    if parser.has_section(_CREDENTIALS_SECTION):
        section = parser[_CREDENTIALS_SECTION]
        role_arn = (section.get("role_arn") or "").strip()
        token_file = (section.get("web_identity_token_file") or "").strip()

    if not role_arn or not token_file:
        raise ValueError(
            "missing required AWS credentials: role_arn or web_identity_token_file is empty"
        )
    return role_arn, token_file


def _decode_raw_url_base64(segment: bytes) -> bytes:
    if not _RAW_URL_BASE64.fullmatch(segment) or len(segment) % 4 == 1:
        raise ValueError("illegal base64 data")
    padded = segment + b"=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded)


def session_expiration_time(token_file: str) -> int:
    """Return the "exp" claim of the JWT stored in token_file.

    Raises ValueError for an empty path or a malformed token and OSError
    when the file cannot be read.
    """
    if not token_file:
        raise ValueError("token file not specified")
    with open(token_file, "rb") as f:
        data = f.read()

    parts = data.split(b".")
    if len(parts) < 2:
        raise ValueError("invalid JWT token format")

    try:
        payload = _decode_raw_url_base64(parts[1])
    except ValueError as exc:
        raise ValueError(f"failed to decode token payload: {exc}") from exc

    try:
        claims = json.loads(payload)
    except ValueError as exc:
        raise ValueError(f"failed to unmarshal token claims: {exc}") from exc

    if claims is None:
        return 0
    if not isinstance(claims, dict):
        raise ValueError("failed to unmarshal token claims: claims are not an object")
    exp = claims.get("exp")
    if exp is None:
        return 0
    if isinstance(exp, bool) or not isinstance(exp, int):
        raise ValueError("failed to unmarshal token claims: exp is not an integer")
    return exp