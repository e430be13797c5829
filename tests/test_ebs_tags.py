import base64
import json

import pytest

from csi_operator.ebs_tags import (
    DRIVER_NAME,
    TAG_HASH_ANNOTATION_KEY,
    PVUpdateItem,
    UpdateType,
    compute_tags_hash,
    get_pv_tag_hash,
    new_and_updated_tags,
    parse_credentials,
    pv_names,
    pvs_to_resource_ids,
    session_expiration_time,
    set_pv_tag_hash,
)


def _pv(name="", handle="", annotations=None):
    pv = {"metadata": {"name": name}, "spec": {"csi": {"driver": DRIVER_NAME, "volumeHandle": handle}}}
    if annotations is not None:
        pv["metadata"]["annotations"] = annotations
    return pv


def _segment(obj):
    raw = json.dumps(obj).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


@pytest.mark.parametrize(
    "input_tags, expected",
    [
        ([{"key": "key1", "value": "value1"}], [{"Key": "key1", "Value": "value1"}]),
        (
            [{"key": "key1", "value": "value1"}, {"key": "key2", "value": "value2"}],
            [{"Key": "key1", "Value": "value1"}, {"Key": "key2", "Value": "value2"}],
        ),
        ([], []),
    ],
)
def test_new_and_updated_tags(input_tags, expected):
    assert new_and_updated_tags(input_tags) == expected


@pytest.mark.parametrize(
    "volumes, expected",
    [
        ([_pv("PV1", "vol-1234")], ["vol-1234"]),
        ([_pv("PV1", "vol-1234"), _pv("PV2", "vol-5678")], ["vol-1234", "vol-5678"]),
        ([], []),
    ],
)
def test_pvs_to_resource_ids(volumes, expected):
    assert pvs_to_resource_ids(volumes) == expected


@pytest.mark.parametrize(
    "tags, expected",
    [
        ([], "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"),
        (
            [{"key": "key1", "value": "value1"}],
            "360222661b6e9726460f6456f2b1dc88ef12447ec526cf9b64dfdeb0ef5631a1",
        ),
        (
            [{"key": "key1", "value": "value1"}, {"key": "key2", "value": "value2"}],
            "716ad4d5f6009800d2c36703b5644368076ded2f87578a1803b572ab43d11ab7",
        ),
    ],
)
def test_compute_tags_hash(tags, expected):
    assert compute_tags_hash(tags) == expected


def test_compute_tags_hash_is_order_independent():
    tags = [{"key": "key2", "value": "value2"}, {"key": "key1", "value": "value1"}]
    assert compute_tags_hash(tags) == (
        "716ad4d5f6009800d2c36703b5644368076ded2f87578a1803b572ab43d11ab7"
    )
    assert tags[0]["key"] == "key2"


def test_get_and_set_pv_tag_hash():
    pv = {"metadata": {"annotations": {}}}
    updated = set_pv_tag_hash(pv, "test-hash")
    assert get_pv_tag_hash(updated) == "test-hash"
    assert pv["metadata"]["annotations"] == {}


def test_set_pv_tag_hash_creates_annotations():
    updated = set_pv_tag_hash({"metadata": {"name": "pv1"}}, "abc")
    assert updated["metadata"]["annotations"] == {TAG_HASH_ANNOTATION_KEY: "abc"}


def test_get_pv_tag_hash_missing_is_empty():
    assert get_pv_tag_hash(_pv("pv1")) == ""


@pytest.mark.parametrize(
    "pvs, expected",
    [
        ([], []),
        ([_pv("pv1")], ["pv1"]),
        ([_pv("pv1"), _pv("pv2")], ["pv1", "pv2"]),
        ([_pv("pv1"), None], ["pv1"]),
    ],
)
def test_pv_names(pvs, expected):
    assert pv_names(*pvs) == expected


def test_pv_update_item_defaults():
    item = PVUpdateItem(UpdateType.BATCH)
    assert item.pv_names == []
    assert item.update_type.value == "batch"
    assert UpdateType.INDIVIDUAL.value == "individual"


def test_parse_credentials():
    data = (
        b"[default]\n"
        b"role_arn = arn:aws:iam::000000000000:role/example\n"
        b"web_identity_token_file = /var/run/secrets/sa/token\n"
    )
    assert parse_credentials(data) == (
        "arn:aws:iam::000000000000:role/example",
        "/var/run/secrets/sa/token",
    )


@pytest.mark.parametrize(
    "data",
    [
        b"[default]\nrole_arn = arn:aws:iam::000000000000:role/example\n",
        b"[default]\nweb_identity_token_file = /tmp/file\n",
        b"[other]\nrole_arn = a\nweb_identity_token_file = b\n",
        b"role_arn = a\nweb_identity_token_file = b\n",
        b"",
    ],
)
def test_parse_credentials_missing_values(data):
    with pytest.raises(ValueError, match="missing required AWS credentials"):
        parse_credentials(data)


def test_session_expiration_time(tmp_path):
    path = tmp_path / "jwt"
    path.write_text(f"{_segment({'alg': 'none'})}.{_segment({'exp': 1700000000})}.sig")
    assert session_expiration_time(str(path)) == 1700000000


def test_session_expiration_time_missing_exp(tmp_path):
    path = tmp_path / "jwt"
    path.write_text(f"header.{_segment({'sub': 'someone'})}.sig")
    assert session_expiration_time(str(path)) == 0


def test_session_expiration_time_empty_path():
    with pytest.raises(ValueError, match="token file not specified"):
        session_expiration_time("")


def test_session_expiration_time_missing_file(tmp_path):
    with pytest.raises(OSError):
        session_expiration_time(str(tmp_path / "absent"))


def test_session_expiration_time_bad_format(tmp_path):
    path = tmp_path / "jwt"
    path.write_text("nodots")
    with pytest.raises(ValueError, match="invalid JWT token format"):
        session_expiration_time(str(path))


def test_session_expiration_time_bad_base64(tmp_path):
    path = tmp_path / "jwt"
    path.write_text("header.@@@.sig")
    with pytest.raises(ValueError, match="failed to decode token payload"):
        session_expiration_time(str(path))


def test_session_expiration_time_bad_json(tmp_path):
    path = tmp_path / "jwt"
    bad = base64.urlsafe_b64encode(b"not json").rstrip(b"=").decode()
    path.write_text(f"header.{bad}.sig")
    with pytest.raises(ValueError, match="failed to unmarshal token claims"):
        session_expiration_time(str(path))


def test_session_expiration_time_non_integer_exp(tmp_path):
    path = tmp_path / "jwt"
    path.write_text(f"header.{_segment({'exp': 'soon'})}.sig")
    with pytest.raises(ValueError, match="failed to unmarshal token claims"):
        session_expiration_time(str(path))