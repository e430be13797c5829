# csi_operator

Building blocks for operators that install and configure CSI storage drivers
on a Kubernetes cluster. The package works on plain Python data:
Deployments, DaemonSets, StorageClasses, VolumeSnapshotClasses,
PersistentVolumes and cluster objects are dictionaries shaped like the
Kubernetes API objects they stand for. A hook is a callable
`hook(operator_spec, obj)` that adjusts `obj` in place, the way an operator
does before it applies the object to the cluster.

It has no runtime dependencies.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

### `csi_operator.clients`

An in-memory view of the cluster that the hooks and the controller read from.

- `ObjectStore` keeps objects by namespace and name (taken from
  `metadata`), with `add`, `get(name, namespace="")`, `list(namespace=None)`,
  `update` and `delete`. Looking up, updating or deleting a missing object
  raises `NotFoundError` (a `LookupError`).
- `EventRecorder` collects `event` and `warning` records in its `events`
  list and logs them.
- `Clients` bundles the state an operator needs:
  - `operator_spec` / `operator_status`, returned together by
    `operator_state()`;
  - `infrastructures` and `cluster_csi_drivers` stores;
  - `control_plane_kube` and `kube`, mappings from a resource name
    (`"configmaps"`, `"secrets"`, `"persistentvolumes"`, ...) to an
    `ObjectStore`, created on first use; `control_plane_config_maps()` and
    `guest_config_maps()` are shortcuts for the ConfigMap stores;
  - `event_recorder`.
- `fake_operator_cr()` returns a managed ClusterCSIDriver with normal log
  levels, and `new_fake_clients(controller_namespace, cr)` builds an empty
  `Clients` whose operator spec and status are the CR's own dictionaries.

```python
from csi_operator.clients import fake_operator_cr, new_fake_clients

cr = fake_operator_cr()
clients = new_fake_clients("clusters-test", cr)
clients.infrastructures.add({"metadata": {"name": "cluster"}, "status": {}})
```

### `csi_operator.aws_efs`

Hooks for the AWS EFS driver:

- `get_fips_enabled(path)` returns `"true"` when the file (by default
  `/proc/sys/crypto/fips_enabled`) holds exactly `1` followed by a newline,
  and `"false"` otherwise, including when it cannot be read.
- `with_fips_deployment_hook(fips_enabled)` and
  `with_fips_daemonset_hook(fips_enabled)` add `FIPS_ENABLED` to the
  `csi-driver` container; with no argument the value comes from
  `get_fips_enabled()`.
- `sts_credentials_request_hook(spec, credentials_request)` sets
  `spec.cloudTokenPath` and `spec.providerSpec.stsIAMRoleARN` of a
  CredentialsRequest when the `ROLEARN` environment variable is non-empty,
  and leaves it alone otherwise.
- `with_volume_metrics_daemonset_hook(clients)` reads the
  `efs.csi.aws.com` ClusterCSIDriver and, unless volume metrics are absent or
  `Disabled`, adds `--vol-metrics-opt-in=true` and, when positive, the
  refresh period and file-system rate limit options.

### `csi_operator.aws_ebs`

Hooks for the AWS EBS driver. The first three read the `cluster`
Infrastructure object from `Clients` and do nothing when it has no AWS
platform status:

- `with_aws_region(clients)` sets `AWS_REGION`,
- `with_custom_endpoint(clients)` sets `AWS_EC2_ENDPOINT` from the `ec2`
  service endpoint,
- `with_custom_tags(clients)` adds `--extra-tags=key=value,...`,
- `with_kms_key_hook(clients)` puts the ClusterCSIDriver's `kmsKeyARN` into
  the StorageClass parameters as `kmsKeyId` when the driver type is `AWS`,
- `with_volume_attributes_class_hook()` adds
  `--feature-gates=VolumeAttributesClass=true` to the `csi-provisioner` and
  `csi-resizer` containers,
- `custom_aws_ca_bundle(config_name, config_maps)` returns `config_name`
  when that ConfigMap exists and carries `ca-bundle.pem`, else `""`;
  `custom_aws_ca_bundle_hook(clients, config_map_name)` then mounts it into
  the driver at `/etc/ca` and sets `AWS_CA_BUNDLE`, raising
  `MissingDriverContainerError` if there is no `csi-driver` container.

### `csi_operator.ebs_tags`

Pure helpers for tagging EBS volumes with the cluster's resource tags:
`compute_tags_hash` (SHA-256 over `key=value;` pairs sorted by key),
`get_pv_tag_hash` and `set_pv_tag_hash` for the
`ebs.openshift.io/volume-tags-hash` annotation (the setter returns a copy),
`new_and_updated_tags`, `pvs_to_resource_ids`, `pv_names`,
`parse_credentials` (role ARN and web identity token file from the INI
credentials secret, `ValueError` if either is missing) and
`session_expiration_time` (the `exp` claim of a JWT file). `UpdateType` and
`PVUpdateItem` describe queue work items.

```python
from csi_operator.ebs_tags import compute_tags_hash

compute_tags_hash([])
# 'e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855'
```

### `csi_operator.ebs_tags_controller`

- `RateLimitingQueue` is a thread-safe work queue: `add_rate_limited`
  delays an item by 10 s doubled on each failure (capped at 36 h),
  `get` blocks until an item is ready (and returns `None` after
  `shut_down`), `done`, `forget` and `num_requeues` manage its state.
- `EBSVolumeTagsController(name, clients, event_recorder=None,
  ec2_client_factory=None, queue=None, clock=time.time)`:
  - `sync()` does nothing unless the operator is `Managed`; otherwise it
    finds the `ebs.csi.aws.com` PersistentVolumes whose tag hash differs
    from the Infrastructure's resource tags and are not already queued, and
    queues them in batches of 50.
  - `run_worker(stop_event)` takes items off the queue until `stop_event` is
    set or the queue is shut down; call `queue.shut_down()` to wake a worker
    that is waiting. `process_volumes(item)` handles one item: a batch is
    tagged with one `create_tags` call and, on failure, every volume is
    re-queued on its own and a warning event recorded; a single volume whose
    EC2 error code is `InvalidVolume.NotFound` is dropped. Tagged volumes get
    the new hash annotation in the PersistentVolume store.
  - Errors from EC2 are expected as `EC2Error(code, message)`.

## What the package does not do

It does not connect to a Kubernetes API server or to AWS or Azure. Cluster
state lives in the in-memory `Clients` stores, which the caller fills and
reads. For EBS tagging, `ec2_client_factory(region, role_arn, token_file)`
must be supplied and return an object with
`create_tags(resources, tags)`; without it the worker reports `EC2Error`
and re-queues. There is no command-line program, no controller loop that
applies objects to a cluster, and no asset generation or templating beyond
`azure_disk.extra_replacements`, which only lists the replacement pairs.

### `csi_operator.azure_disk`

Hooks for the Azure Disk driver:

- `running_in_azure_stack_hub(infra)` tells whether the Infrastructure's
  Azure cloud name is `AzureStackCloud`;
- `inject_env_and_mounts(pod_spec)` points the `csi-driver` container at
  `/etc/azure/azurestackcloud.json`, and
  `with_azure_stack_hub_deployment_hook(flag)` /
  `with_azure_stack_hub_daemonset_hook(flag)` apply it when the flag is true;
- `stack_hub_storage_class_hook()` sets `skuname` to `Premium_LRS`;
- `volume_snapshot_class_hook()` sets `incremental` to `"false"`;
- `kms_key_hook(clients)` sets the StorageClass's `diskEncryptionSetID`
  from the ClusterCSIDriver's disk encryption set when the driver type is
  `Azure`, raising `NotFoundError` when no ClusterCSIDriver matches the
  provisioner;
- `with_aro_csi_volume(secret_provider_class)` mounts a secrets-store CSI
  volume at `/mnt/certs` in the first container;
- `extra_replacements(environ)` returns the flattened placeholder/value
  pairs for the cloud controller manager operator image and workload
  identity.