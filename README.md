# edgeengine

`edgeengine` keeps the applications on an edge node in line with what the
cloud wants them to run. It is a library. You supply the collaborators that
talk to the container runtime, the cloud and the message broker, and the
package does the bookkeeping between them.

## Modules

- `edgeengine.models` holds the data classes: `AppInfo`, `AppStats`,
  `InstanceStats`, `Application`, `Service`, `Volume`, `Configuration`,
  `Secret`, `Message` and `Node`. It also has `Report` and `Desire`, which
  are dict-based shadows with `app_infos`, `set_app_infos`, `app_stats` and
  `set_app_stats` for system (`is_sys=True`) and user applications.
- `edgeengine.conflicts` has `check_service`, `check_port`, `make_key`,
  `align_apps` and `is_object_config`.
- `edgeengine.store` has `ObjectStore`, a thread-safe in-memory key-value
  store that keeps deep copies of what it holds. `get` and `delete` raise
  `KeyNotFoundError` when a key is missing.
- `edgeengine.clean` has `recycle(store, node, download_path)`.
- `edgeengine.engine` has `Engine` and the helpers `get_delete_and_update`,
  `filter_app_like`, `filter_app_not_like`, `filter_desire`, `valid_param`
  and `gen_system_cert`.
- `edgeengine.downside` has `DownsideHandler`, which handles remote
  debugging and node labelling commands.
- `edgeengine.eventx` has `EventX`, `EventHandler` and `EventConfig`, which
  forward node property changes to an MQTT client.
- `edgeengine.activate` and `edgeengine.activate_server` handle node
  activation: `Activate`, `ActivateConfig`, `Fingerprint`, `Proof`,
  `Attribute` and `ActivateServer`.

## Working out what to change

```python
from edgeengine.engine import get_delete_and_update, filter_app_not_like
from edgeengine.models import AppInfo

desired = [AppInfo(name="web", version="2"), AppInfo(name="db", version="1")]
reported = [AppInfo(name="web", version="1"), AppInfo(name="cache", version="1")]

delete, update = get_delete_and_update(desired, reported)
# delete == {"cache": AppInfo("cache", "1")}
# update holds "web" (new version) and "db" (new application)

filter_app_not_like(desired, ["db"])   # -> [AppInfo("web", "2")]
```

`filter_app_like(apps, like)` keeps, for each pattern, the first
application whose name contains it. Passing `None` as the pattern list
returns the applications unchanged.

## Checking conflicts before applying

```python
from edgeengine.conflicts import check_service, check_port

check_service(infos, apps, stats, update)
check_port(infos, apps, stats, update)
```

Both functions change `apps`, `stats` and `update` in place.

- When several applications declare the same service name, one of them is
  kept. That is the first one that already has stats (it is running), or
  else the first one listed.
- When several services use the same host port, one of them is kept in the
  same way.
- A service with more than one replica may not have a host port.

Every application that is dropped is removed from `update` and `apps`. The
reason is appended to the `cause` of its instance in `stats`.

## Log query parameters

```python
from edgeengine.engine import valid_param, InvalidParameterError

valid_param("100", "")      # -> (100, 0)
valid_param("-1", "")       # raises InvalidParameterError
valid_param("abc", "")      # raises InvalidParameterError
```

Each value must be a 64-bit integer that is zero or more. An empty string
counts as zero.

## Recycling object storage

```python
from edgeengine.clean import recycle

removed = recycle(store, node, "/var/lib/objects")
```

`recycle` collects the configurations referenced by every application in
the node's report and desire, for both system and user applications. It
then deletes every object configuration that is not among them. An object
configuration is one with a data key starting with `_object_`. For each one
it deletes, it also removes the directory `download_path/<name>`. It returns
the sorted store keys it removed. It raises `KeyNotFoundError` when a listed
application is not in the store.

## The engine

```python
from edgeengine.engine import Engine

engine = Engine(config, store, node, syncer, ami, security, pubsub)
engine.start()
...
engine.close()
```

`config` is a mapping. Every key is optional:

- `mode`
- `host_path_lib`
- `download_path`
- `report_interval` (seconds, default 20)
- `namespace`
- `system_namespace`
- `service_name`
- `app_name`
- `cert_path`

`service_name` and `app_name` default to the `BAETYL_SERVICE_NAME` and
`BAETYL_APP_NAME` environment variables.

The collaborators are duck-typed:

- `node` has `get()`, which returns a `Node`, and `report(report, override)`,
  which returns the delta or `None`.
- `syncer` has `sync_apps`, `sync_resource` and `prepare_app`.
- `ami` has `collect_node_info`, `collect_node_stats`, `stats_apps`,
  `get_mode_info`, `delete_app`, `apply_app` and `fetch_log`.
- `security` has `get_ca` and `issue_certificate`. It may be `None`.
- `pubsub` has `subscribe`, `unsubscribe` and `publish`. It may be `None`.

When `security` is given, the constructor writes the service's CA,
certificate and key under `cert_path`. Applications other than
`baetyl-core` and `baetyl-init` also get a per-service certificate, added as
a secret volume.

- `start()` reports every `report_interval` seconds and deletes applications
  that are no longer desired. It also passes messages from the `downside`
  topic to `engine.downside_handler`, if one has been set. The channel
  returned by `subscribe` must provide `get(timeout=...)`, as
  `queue.Queue` does.
- `report_and_desire()` runs one round without deleting anything.
- `collect(namespace, is_sys, desire)` builds a `Report`.
- `service_log(service, system, tail_lines, since_seconds)` validates the
  parameters and returns the reader from `ami.fetch_log`.
- `apply_apps(namespace, infos, stats)` applies applications concurrently.
  Failures are recorded in `stats`.

If the master node reports disk pressure, each round recycles object
storage first.

## Downside messages

`DownsideHandler(pubsub, ami, chain_factory, service_name)` acts only when
`service_name` is `baetyl-core`. It handles these command messages:

- `connect`
- `logs`
- `disconnect`
- `nodeLabel`
- `multiNodeLabels`

Data messages are forwarded to the topic `<namespace>_<name>_<container>_<token>_down`
of an open chain. Chains come from `chain_factory(metadata)` and need
`debug()`, `view_logs(options)` and `close()`. Successes and failures are
published on the `upside` topic. Errors raise `DownsideError`.

## Event forwarding

```python
from edgeengine.eventx import EventX, EventConfig

with EventX(EventConfig(publish_topic="$baetyl/node/props", publish_qos=0), pubsub, mqtt):
    ...
```

`EventX` subscribes to the `event` topic. For each non-empty `nodeProps`
delta, it calls `mqtt.publish(qos, topic, payload)` with compact JSON that
has sorted keys. Other message kinds are ignored.

## Activation

```python
from edgeengine.activate import Activate, ActivateConfig, Fingerprint, Proof

config = ActivateConfig(
    address="https://activation.example.com",
    batch_name="batch",
    fingerprints=[Fingerprint(proof=Proof.HOSTNAME)],
)
active = Activate(config, ami)
active.start()
active.wait_and_close(timeout=60)
```

`collect()` computes the fingerprint from the first configured fingerprint.
The source depends on the proof:

- `input`: a collected attribute
- `sn`: a file under `sn_path`
- `hostName`, `machineID`, `systemUUID` or `bootID`: the node information
  that `ami.collect_node_info()` returns for `node_name`, which defaults to
  the `KUBE_NODE_NAME` environment variable

If that node is missing, it raises `MasterNodeInfoError`. An unknown proof
raises `ProofTypeNotSupportedError`.

`activate()` posts the request as JSON to `address + url`. It writes the
returned CA, certificate and key to `node_ca`, `node_cert` and `node_key`,
and returns whether it succeeded. The `post` argument can replace the
default urllib-based sender.

`start()` has two modes:

- If `listen` is empty, it activates at once and then every `interval`
  seconds.
- Otherwise it serves a web form through `ActivateServer`. The `pages`
  directory must hold Jinja2 templates named `active.html.template`,
  `success.html.template` and `failed.html.template`. The form template
  receives the configured attributes as `Attributes`.

`ActivateServer.handle_update(method, form)` accepts only POST. It stores
the submitted attributes, falling back to the configured values. It then
activates and renders the success page if the certificate file exists, or
the failed page if it does not.

## What the package does not do

It has no command-line program and no ready-to-run service. It does not
include the parts an edge agent would normally ship with:

- a container runtime backend
- persistent storage for the node shadow (`ObjectStore` keeps its data in
  memory only)
- synchronisation with the cloud
- a certificate authority
- an MQTT client
- remote debugging chains

You provide these as the objects described above.

## Tests

The test suite uses pytest. Install the package with the `test` extra to
get it.