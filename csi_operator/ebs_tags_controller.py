"""Controller that keeps AWS EBS volume tags in line with the cluster's resource tags."""

from __future__ import annotations

import base64
import binascii
import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Hashable, Protocol

from csi_operator.clients import Clients, EventRecorder, NotFoundError
from csi_operator.ebs_tags import (
    AWS_EBS_SECRET_NAME,
    AWS_EBS_SECRET_NAMESPACE,
    AWS_ERROR_VOLUME_NOT_FOUND,
    BATCH_SIZE,
    DRIVER_NAME,
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

log = logging.getLogger(__name__)

INFRASTRUCTURE_NAME = "cluster"
DEFAULT_BASE_DELAY = 10.0
DEFAULT_MAX_DELAY = 36 * 60 * 60.0
UPDATE_FAILED_REASON = "EBSVolumeTagsUpdateFailed"


class EC2Error(Exception):
    """An error reported by the EC2 API, carrying the AWS error code."""

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}" if message else code)


class _EC2Client(Protocol):
    def create_tags(self, resources: list[str], tags: list[dict[str, str]]) -> Any: ...


EC2ClientFactory = Callable[[str, str, str], _EC2Client]


class RateLimitingQueue:
    """A work queue with per-item exponential back-off on re-adds.

    An item is handed to at most one consumer at a time; an item added again
    while it is being processed is queued once processing is done.
    """

    def __init__(
        self, base_delay: float = DEFAULT_BASE_DELAY, max_delay: float = DEFAULT_MAX_DELAY
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_at: dict[Hashable, float] = {}
        self._failures: dict[Hashable, int] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            self._promote_ready()
            return len(self._queue)

    def _when(self, item: Hashable) -> float:
        exp = self._failures.get(item, 0)
        self._failures[item] = exp + 1
        if exp > 62:
            return self.max_delay
        return min(self.base_delay * (2**exp), self.max_delay)

    def _add(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def _promote_ready(self) -> None:
        now = time.monotonic()
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, item = heapq.heappop(self._waiting)
            if self._waiting_at.get(item) != ready_at:
                continue
            del self._waiting_at[item]
            self._add(item)

    def add_rate_limited(self, item: Hashable) -> None:
        """Add the item after a delay that doubles with each failure."""
        with self._cond:
            if self._shutting_down:
                return
            delay = self._when(item)
            if delay <= 0:
                self._add(item)
                return
            ready_at = time.monotonic() + delay
            current = self._waiting_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._waiting_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            self._cond.notify()

    def get(self) -> Any:
        """Block until an item is ready and return it; return None once shut down."""
        with self._cond:
            while True:
                self._promote_ready()
                if self._queue:
                    item = self._queue.popleft()
                    self._processing.add(item)
                    self._dirty.discard(item)
                    return item
                if self._shutting_down:
                    return None
                timeout = None
                if self._waiting:
                    timeout = max(0.0, self._waiting[0][0] - time.monotonic())
                self._cond.wait(timeout)

    def done(self, item: Hashable) -> None:
        """Mark the item as processed, queueing it again if it was re-added."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._cond.notify()

    def forget(self, item: Hashable) -> None:
        """Reset the item's failure count."""
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        """Return how many times the item was added with back-off."""
        with self._cond:
            return self._failures.get(item, 0)

    def shut_down(self) -> None:
        """Stop accepting items and wake every waiting consumer."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()


def _name(obj: dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name", "")


def _aws_status(infra: dict[str, Any]) -> dict[str, Any] | None:
    platform_status = (infra.get("status") or {}).get("platformStatus")
    if not platform_status:
        return None
    return platform_status.get("aws")


def _secret_bytes(value: bytes | str) -> bytes:
    if isinstance(value, bytes):
        return value
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"error decoding credentials data: {exc}") from exc


def _format_names(names: list[str]) -> str:
    return "[" + " ".join(names) + "]"


class EBSVolumeTagsController:
    """Pushes PersistentVolumes whose tags are stale to a queue and tags them in EC2."""

    def __init__(
        self,
        name: str,
        clients: Clients,
        event_recorder: EventRecorder | None = None,
        ec2_client_factory: EC2ClientFactory | None = None,
        queue: RateLimitingQueue | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.clients = clients
        self.event_recorder = event_recorder or clients.event_recorder
        self.ec2_client_factory = ec2_client_factory
        self.queue = queue if queue is not None else RateLimitingQueue()
        self._clock = clock
        self._queue_set: set[str] = set()
        self._lock = threading.Lock()
        self._ec2_client: _EC2Client | None = None
        self._session_exp_time = 0

    # -- reconciliation -------------------------------------------------

    def sync(self) -> None:
        """Queue every EBS volume whose tags differ from the Infrastructure's tags."""
        log.info("EBSVolumeTagsController sync started")
        try:
            spec = self.clients.operator_state().spec
            if spec.get("managementState") != "Managed":
                return
            infra = self._infrastructure()
            aws = _aws_status(infra)
            if aws is None or aws.get("resourceTags") is None:
                return
            self._fetch_and_push_pvs(aws["resourceTags"])
        finally:
            log.info("EBSVolumeTagsController sync finished")

    def _infrastructure(self) -> dict[str, Any]:
        return self.clients.infrastructures.get(INFRASTRUCTURE_NAME)

    def _fetch_and_push_pvs(self, resource_tags: list[dict[str, Any]]) -> None:
        pvs = self.clients.kube["persistentvolumes"].list()
        new_hash = compute_tags_hash(resource_tags)
        updatable = self.filter_updatable_volumes(pvs, new_hash)
        if not updatable:
            log.info("No volume tags to update as hashes are unchanged")
            return
        for start in range(0, len(updatable), BATCH_SIZE):
            self.add_batch_volumes_to_queue_worker(updatable[start : start + BATCH_SIZE])

    def filter_updatable_volumes(
        self, volumes: list[dict[str, Any]], new_tags_hash: str
    ) -> list[dict[str, Any]]:
        """Return the EBS CSI volumes not yet queued whose tag hash is stale."""
        result = []
        for volume in volumes:
            csi = (volume.get("spec") or {}).get("csi")
            if (
                csi
                and csi.get("driver") == DRIVER_NAME
                and not self.is_volume_in_queue(_name(volume))
                and get_pv_tag_hash(volume) != new_tags_hash
            ):
                result.append(volume)
        return result

    # -- queue set ------------------------------------------------------

    def is_volume_in_queue(self, volume_name: str) -> bool:
        with self._lock:
            return volume_name in self._queue_set

    def add_volumes_to_queue_set(self, *args: dict[str, Any]) -> None:
        with self._lock:
            self._queue_set.update(_name(volume) for volume in args)

    def remove_volumes_from_queue_set(self, *args: str) -> None:
        with self._lock:
            self._queue_set.difference_update(args)

    def add_batch_volumes_to_queue_worker(self, pvs: list[dict[str, Any]]) -> None:
        """Track the PVs as queued and add one batch item for them."""
        if not pvs:
            return
        self.add_volumes_to_queue_set(*pvs)
        self.queue.add_rate_limited(PVUpdateItem(UpdateType.BATCH, pv_names(*pvs)))

    # -- EC2 ------------------------------------------------------------

    def _is_session_expired(self) -> bool:
        return self._session_exp_time < int(self._clock())

    def _get_ec2_client(self, region: str) -> _EC2Client:
        if self._ec2_client is None or self._is_session_expired():
            self._ec2_client = self._create_ec2_client(region)
        return self._ec2_client

    def _create_ec2_client(self, region: str) -> _EC2Client:
        if self.ec2_client_factory is None:
            raise EC2Error("NoClientFactory", "no EC2 client factory configured")
        secret = self.clients.kube["secrets"].get(AWS_EBS_SECRET_NAME, AWS_EBS_SECRET_NAMESPACE)
        data = secret.get("data") or {}
        if "credentials" not in data:
            raise ValueError("no valid AWS credentials found in secret")
        role_arn, token_file = parse_credentials(_secret_bytes(data["credentials"]))
        expiration = session_expiration_time(token_file)
        client = self.ec2_client_factory(region, role_arn, token_file)
        self._session_exp_time = expiration
        return client

    def _update_ebs_tags(
        self, ec2: _EC2Client, resource_tags: list[dict[str, Any]], pvs: list[dict[str, Any]]
    ) -> None:
        ec2.create_tags(pvs_to_resource_ids(pvs), new_and_updated_tags(resource_tags))

    # -- worker ---------------------------------------------------------

    def needs_tag_update(self, infra: dict[str, Any], pv: dict[str, Any]) -> bool:
        existing = get_pv_tag_hash(pv)
        aws = _aws_status(infra) or {}
        new_hash = compute_tags_hash(aws.get("resourceTags") or [])
        return existing == "" or existing != new_hash

    def run_worker(self, stop_event: threading.Event) -> None:
        """Process queue items until stop_event is set or the queue shuts down."""
        while not stop_event.is_set():
            item = self.queue.get()
            if item is None:
                log.info("tags queue worker is shutting down")
                return
            self.process_volumes(item)
        log.info("stopping tags queue worker for EBS Volume Tags")

    def process_volumes(self, item: PVUpdateItem | None) -> None:
        """Tag the volumes of one queue item, re-queueing them on failure."""
        try:
            self._process(item)
        finally:
            self.queue.done(item)

    def _process(self, item: PVUpdateItem | None) -> None:
        if item is None or not item.pv_names:
            self.queue.forget(item)
            return

        try:
            infra = self._infrastructure()
        except NotFoundError as exc:
            log.error("failed to get infrastructure object: %s", exc)
            self.queue.add_rate_limited(item)
            return

        aws = _aws_status(infra)
        if aws is None or not aws.get("region"):
            log.info("skipping volume tags update because AWS region or tags are not defined")
            self.remove_volumes_from_queue_set(*item.pv_names)
            return

        try:
            ec2 = self._get_ec2_client(aws["region"])
        except (EC2Error, NotFoundError, ValueError, OSError) as exc:
            log.error("failed to get EC2 client: %s", exc)
            self.queue.add_rate_limited(item)
            return

        if item.update_type == UpdateType.BATCH:
            self._process_batch(item, aws, ec2)
        elif item.update_type == UpdateType.INDIVIDUAL:
            self._process_individual(item, infra, aws, ec2)
        else:
            log.info("skipping volume tags update because unknown update type")
            self.remove_volumes_from_queue_set(*item.pv_names)
            self.queue.forget(item)

    def _requeue_individual(self, name: str) -> None:
        self.queue.add_rate_limited(PVUpdateItem(UpdateType.INDIVIDUAL, [name]))

    def _process_batch(
        self, item: PVUpdateItem, aws: dict[str, Any], ec2: _EC2Client
    ) -> None:
        store = self.clients.kube["persistentvolumes"]
        pvs = []
        for name in item.pv_names:
            try:
                pvs.append(store.get(name))
            except NotFoundError:
                self.remove_volumes_from_queue_set(name)
        if not pvs:
            self.queue.forget(item)
            return

        resource_tags = aws.get("resourceTags") or []
        try:
            self._update_ebs_tags(ec2, resource_tags, pvs)
        except EC2Error as exc:
            log.error("failed to update EBS tags: %s", exc)
            self._handle_batch_failure(pvs, exc)
            self.queue.forget(item)
            return

        new_hash = compute_tags_hash(resource_tags)
        for volume in pvs:
            try:
                store.update(set_pv_tag_hash(volume, new_hash))
            except NotFoundError as exc:
                log.error("Error updating PV annotations for volume %s: %s", _name(volume), exc)
                self._requeue_individual(_name(volume))
                continue
            self.remove_volumes_from_queue_set(_name(volume))
            log.info("Successfully updated PV annotations and tags for volume %s", _name(volume))
        self.queue.forget(item)

    def _process_individual(
        self, item: PVUpdateItem, infra: dict[str, Any], aws: dict[str, Any], ec2: _EC2Client
    ) -> None:
        store = self.clients.kube["persistentvolumes"]
        name = item.pv_names[0]
        try:
            pv = store.get(name)
        except NotFoundError:
            log.info("skipping volume tags update because PV %s does not exist", name)
            self.remove_volumes_from_queue_set(name)
            self.queue.forget(item)
            return

        if not self.needs_tag_update(infra, pv):
            self.remove_volumes_from_queue_set(name)
            self.queue.forget(item)
            return

        resource_tags = aws.get("resourceTags") or []
        try:
            self._update_ebs_tags(ec2, resource_tags, [pv])
        except EC2Error as exc:
            if exc.code == AWS_ERROR_VOLUME_NOT_FOUND:
                log.error(
                    "Volume %s not found: %s, removing the volume from the queue",
                    pv["spec"]["csi"]["volumeHandle"],
                    exc.message,
                )
                self.queue.forget(item)
                self.remove_volumes_from_queue_set(name)
                return
            self._handle_individual_failure(pv, exc)
            self.queue.add_rate_limited(item)
            return

        try:
            store.update(set_pv_tag_hash(pv, compute_tags_hash(resource_tags)))
        except NotFoundError as exc:
            log.error("Error updating PV annotations for volume %s: %s", name, exc)
            self.queue.add_rate_limited(item)
            return
        self.remove_volumes_from_queue_set(name)
        log.info("Successfully updated PV annotations and tags for volume %s", name)
        self.queue.forget(item)

    def _handle_batch_failure(self, pvs: list[dict[str, Any]], error: Exception) -> None:
        names = []
        for pv in pvs:
            log.error("error updating volume %s tags: %s", _name(pv), error)
            names.append(_name(pv))
            self._requeue_individual(_name(pv))
        listed = _format_names(names)
        message = f"error updating tags for volume {listed}: {error}"
        self.event_recorder.warning(
            UPDATE_FAILED_REASON, f"failed to update tags for batch {listed}: {message}"
        )

    def _handle_individual_failure(self, pv: dict[str, Any], error: Exception) -> None:
        name = _name(pv)
        log.error("error updating volume %s tags: %s", name, error)
        message = f"error updating tags for volume {name}: {error}"
        self.event_recorder.warning(
            UPDATE_FAILED_REASON, f"failed to update tags for volume {name}: {message}"
        )