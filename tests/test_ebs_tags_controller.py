import base64
import json
import threading

import pytest

from csi_operator.clients import fake_operator_cr, new_fake_clients
from csi_operator.ebs_tags import (
    DRIVER_NAME,
    TAG_HASH_ANNOTATION_KEY,
    PVUpdateItem,
    UpdateType,
    compute_tags_hash,
    get_pv_tag_hash,
)
from csi_operator.ebs_tags_controller import (
    EBSVolumeTagsController,
    EC2Error,
    RateLimitingQueue,
)

TAGS = [{"key": "key1", "value": "value1"}]
ROLE_ARN = "arn:aws:iam::000000000000:role/example"


def make_pv(name, annotations=None, driver=DRIVER_NAME):
    meta = {"name": name}
    if annotations is not None:
        meta["annotations"] = annotations
    return {"metadata": meta, "spec": {"csi": {"driver": driver, "volumeHandle": f"vol-{name}"}}}


class FakeEC2:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def create_tags(self, resources, tags):
        self.calls.append((resources, tags))
        if self.error is not None:
            raise self.error


@pytest.fixture
def token_file(tmp_path):
    payload = base64.urlsafe_b64encode(json.dumps({"exp": 4102444800}).encode()).rstrip(b"=")
    path = tmp_path / "token"
    path.write_bytes(b"header." + payload + b".signature")
    return str(path)


def make_controller(token_file, ec2, region="us-east-1", tags=TAGS):
    cr = fake_operator_cr()
    clients = new_fake_clients("clusters-test", cr)
    clients.infrastructures.add(
        {
            "metadata": {"name": "cluster"},
            "status": {"platformStatus": {"aws": {"region": region, "resourceTags": tags}}},
        }
    )
    credentials = f"[default]\nrole_arn = {ROLE_ARN}\nweb_identity_token_file = {token_file}\n"
    clients.kube["secrets"].add(
        {
            "metadata": {"name": "ebs-cloud-credentials", "namespace": "openshift-cluster-csi-drivers"},
            "data": {"credentials": credentials.encode()},
        }
    )
    factory_calls = []

    def factory(region_name, role_arn, token_path):
        factory_calls.append((region_name, role_arn, token_path))
        return ec2

    controller = EBSVolumeTagsController(
        "tags",
        clients,
        ec2_client_factory=factory,
        queue=RateLimitingQueue(base_delay=0),
        clock=lambda: 1_000_000,
    )
    return controller, clients, factory_calls


@pytest.mark.parametrize(
    "pvs, new_hash, expected",
    [
        ([], "new-hash", []),
        ([make_pv("pv1", {TAG_HASH_ANNOTATION_KEY: "existing-hash"})], "existing-hash", []),
        ([make_pv("pv1", {TAG_HASH_ANNOTATION_KEY: "old-hash"})], "new-hash", ["pv1"]),
        ([make_pv("pv1")], "new-hash", ["pv1"]),
        ([make_pv("pv1", driver="other.csi.example.com")], "new-hash", []),
    ],
)
def test_filter_updatable_volumes(pvs, new_hash, expected):
    controller = EBSVolumeTagsController("tags", new_fake_clients("ns", fake_operator_cr()))
    result = controller.filter_updatable_volumes(pvs, new_hash)
    assert [pv["metadata"]["name"] for pv in result] == expected


def test_filter_skips_queued_volumes():
    controller = EBSVolumeTagsController("tags", new_fake_clients("ns", fake_operator_cr()))
    controller.add_volumes_to_queue_set(make_pv("pv1"))
    result = controller.filter_updatable_volumes([make_pv("pv1"), make_pv("pv2")], "h")
    assert [pv["metadata"]["name"] for pv in result] == ["pv2"]


@pytest.mark.parametrize("name, expected", [("pv1", True), ("pv2", False)])
def test_is_volume_in_queue(name, expected):
    controller = EBSVolumeTagsController("tags", new_fake_clients("ns", fake_operator_cr()))
    controller.add_volumes_to_queue_set({"metadata": {"name": "pv1"}})
    assert controller.is_volume_in_queue(name) is expected


def test_add_batch_volumes_to_queue_worker():
    controller = EBSVolumeTagsController(
        "tags", new_fake_clients("ns", fake_operator_cr()), queue=RateLimitingQueue(base_delay=0)
    )
    pvs = [{"metadata": {"name": "pv1"}}, {"metadata": {"name": "pv2"}}]
    controller.add_batch_volumes_to_queue_worker(pvs)
    assert controller.is_volume_in_queue("pv1")
    assert controller.is_volume_in_queue("pv2")
    item = controller.queue.get()
    assert item.update_type == UpdateType.BATCH
    assert item.pv_names == ["pv1", "pv2"]


def test_remove_volumes_from_queue_set():
    controller = EBSVolumeTagsController("tags", new_fake_clients("ns", fake_operator_cr()))
    controller.add_volumes_to_queue_set({"metadata": {"name": "pv1"}})
    controller.add_volumes_to_queue_set({"metadata": {"name": "pv2"}})
    controller.remove_volumes_from_queue_set("pv1")
    assert not controller.is_volume_in_queue("pv1")
    assert controller.is_volume_in_queue("pv2")


def test_queue_requeues_and_forget():
    queue = RateLimitingQueue(base_delay=0)
    item = PVUpdateItem(UpdateType.BATCH, ["pv1"])
    queue.add_rate_limited(item)
    queue.add_rate_limited(item)
    assert queue.num_requeues(item) == 2
    assert len(queue) == 1
    queue.forget(item)
    assert queue.num_requeues(item) == 0


def test_queue_readds_dirty_item_after_done():
    queue = RateLimitingQueue(base_delay=0)
    item = PVUpdateItem(UpdateType.BATCH, ["pv1"])
    queue.add_rate_limited(item)
    assert queue.get() is item
    queue.add_rate_limited(item)
    assert len(queue) == 0
    queue.done(item)
    assert len(queue) == 1


def test_queue_delay_and_shutdown():
    queue = RateLimitingQueue(base_delay=0.01)
    item = PVUpdateItem(UpdateType.INDIVIDUAL, ["pv1"])
    queue.add_rate_limited(item)
    assert queue.get() is item
    queue.shut_down()
    assert queue.get() is None


def test_sync_queues_batches(token_file):
    controller, clients, _ = make_controller(token_file, FakeEC2())
    for i in range(51):
        clients.kube["persistentvolumes"].add(make_pv(f"pv{i}"))
    clients.kube["persistentvolumes"].add(
        make_pv("done", {TAG_HASH_ANNOTATION_KEY: compute_tags_hash(TAGS)})
    )
    controller.sync()
    first = controller.queue.get()
    second = controller.queue.get()
    assert sorted([len(first.pv_names), len(second.pv_names)]) == [1, 50]
    assert not controller.is_volume_in_queue("done")
    assert controller.is_volume_in_queue("pv0")


def test_sync_unmanaged_does_nothing(token_file):
    controller, clients, _ = make_controller(token_file, FakeEC2())
    clients.operator_spec["managementState"] = "Unmanaged"
    clients.kube["persistentvolumes"].add(make_pv("pv1"))
    controller.sync()
    assert len(controller.queue) == 0
    assert not controller.is_volume_in_queue("pv1")


def test_process_batch_success(token_file):
    ec2 = FakeEC2()
    controller, clients, factory_calls = make_controller(token_file, ec2)
    clients.kube["persistentvolumes"].add(make_pv("pv1"))
    controller.sync()
    item = controller.queue.get()
    controller.process_volumes(item)
    assert ec2.calls == [(["vol-pv1"], [{"Key": "key1", "Value": "value1"}])]
    assert factory_calls == [("us-east-1", ROLE_ARN, token_file)]
    pv = clients.kube["persistentvolumes"].get("pv1")
    assert get_pv_tag_hash(pv) == compute_tags_hash(TAGS)
    assert not controller.is_volume_in_queue("pv1")
    assert controller.queue.num_requeues(item) == 0


def test_ec2_session_is_reused(token_file):
    ec2 = FakeEC2()
    controller, clients, factory_calls = make_controller(token_file, ec2)
    clients.kube["persistentvolumes"].add(make_pv("pv1"))
    clients.kube["persistentvolumes"].add(make_pv("pv2"))
    controller.process_volumes(PVUpdateItem(UpdateType.INDIVIDUAL, ["pv1"]))
    controller.process_volumes(PVUpdateItem(UpdateType.INDIVIDUAL, ["pv2"]))
    assert len(factory_calls) == 1
    assert len(ec2.calls) == 2


def test_process_batch_failure_requeues_individually(token_file):
    ec2 = FakeEC2(error=EC2Error("RequestLimitExceeded", "slow down"))
    controller, clients, _ = make_controller(token_file, ec2)
    clients.kube["persistentvolumes"].add(make_pv("pv1"))
    clients.kube["persistentvolumes"].add(make_pv("pv2"))
    controller.add_batch_volumes_to_queue_worker(
        [make_pv("pv1"), make_pv("pv2")]
    )
    controller.process_volumes(controller.queue.get())
    requeued = [controller.queue.get(), controller.queue.get()]
    assert {tuple(i.pv_names) for i in requeued} == {("pv1",), ("pv2",)}
    assert all(i.update_type == UpdateType.INDIVIDUAL for i in requeued)
    warnings = [e for e in controller.event_recorder.events if e.type == "Warning"]
    assert len(warnings) == 1
    assert warnings[0].reason == "EBSVolumeTagsUpdateFailed"
    assert "[pv1 pv2]" in warnings[0].message


def test_process_individual_volume_not_found_in_aws(token_file):
    ec2 = FakeEC2(error=EC2Error("InvalidVolume.NotFound", "gone"))
    controller, clients, _ = make_controller(token_file, ec2)
    clients.kube["persistentvolumes"].add(make_pv("pv1"))
    controller.add_volumes_to_queue_set(make_pv("pv1"))
    item = PVUpdateItem(UpdateType.INDIVIDUAL, ["pv1"])
    controller.process_volumes(item)
    assert not controller.is_volume_in_queue("pv1")
    assert controller.queue.num_requeues(item) == 0
    assert len(controller.queue) == 0


def test_process_individual_failure_requeues(token_file):
    ec2 = FakeEC2(error=EC2Error("InternalError", "boom"))
    controller, clients, _ = make_controller(token_file, ec2)
    clients.kube["persistentvolumes"].add(make_pv("pv1"))
    item = PVUpdateItem(UpdateType.INDIVIDUAL, ["pv1"])
    controller.process_volumes(item)
    assert controller.queue.num_requeues(item) == 1
    assert controller.queue.get() is item


def test_process_individual_missing_pv(token_file):
    controller, _, _ = make_controller(token_file, FakeEC2())
    controller.add_volumes_to_queue_set(make_pv("ghost"))
    controller.process_volumes(PVUpdateItem(UpdateType.INDIVIDUAL, ["ghost"]))
    assert not controller.is_volume_in_queue("ghost")


def test_process_without_region_drops_from_queue_set(token_file):
    ec2 = FakeEC2()
    controller, clients, _ = make_controller(token_file, ec2, region="")
    controller.add_volumes_to_queue_set(make_pv("pv1"))
    controller.process_volumes(PVUpdateItem(UpdateType.BATCH, ["pv1"]))
    assert not controller.is_volume_in_queue("pv1")
    assert ec2.calls == []


def test_needs_tag_update(token_file):
    controller, clients, _ = make_controller(token_file, FakeEC2())
    infra = clients.infrastructures.get("cluster")
    assert controller.needs_tag_update(infra, make_pv("pv1")) is True
    current = make_pv("pv1", {TAG_HASH_ANNOTATION_KEY: compute_tags_hash(TAGS)})
    assert controller.needs_tag_update(infra, current) is False


def test_run_worker_stops_on_shutdown(token_file):
    ec2 = FakeEC2()
    controller, clients, _ = make_controller(token_file, ec2)
    clients.kube["persistentvolumes"].add(make_pv("pv1"))
    controller.add_batch_volumes_to_queue_worker([make_pv("pv1")])
    worker = threading.Thread(target=controller.run_worker, args=(threading.Event(),))
    worker.start()
    for _ in range(200):
        if ec2.calls:
            break
        threading.Event().wait(0.01)
    controller.queue.shut_down()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert ec2.calls == [(["vol-pv1"], [{"Key": "key1", "Value": "value1"}])]