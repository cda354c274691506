# edgenode

`edgenode` is the core of an edge node agent, written as a library. It keeps
the applications on a node in line with what the cloud desires, handles
commands sent down to the node (remote debugging sessions, log viewing, node
labels), forwards node property changes to an MQTT broker, and activates a
fresh node by exchanging a fingerprint for its certificates.

The package does the decision making; the things it talks to (container
runtime, object store, pub/sub bus, MQTT client, certificate authority) are
objects you pass in.

## Modules

| Module              | Contents |
|---------------------|----------|
| `edgenode.models`   | `AppInfo`, `AppStats`, `InstanceStats`, `Application`, `Service`, `ContainerPort`, `VolumeMount`, `Volume`, `ObjectReference`, `Configuration`, `Secret`, `Message`, and the shadow documents `Shadow`, `Report`, `Desire`; `is_config_object` |
| `edgenode.apps`     | Reconciliation helpers: `check_service`, `check_port`, `get_delete_and_update`, `align_apps`, `filter_app_like`, `filter_app_not_like`, `filter_desire`, `make_key`, `is_object_config`, `valid_param` |
| `edgenode.config`   | `Config` and its parts (`InitConfig`, `ActiveConfig`, `BatchConfig`, `CollectorConfig`, `Fingerprint`, `Attribute`, `NodeCertConfig`, `EventConfig`), the `Proof` enum and `load_config` |
| `edgenode.downside` | `DownsideHandler`, which processes messages from the downside topic |
| `edgenode.eventx`   | `EventHandler` and `EventX`, which relay node property deltas to a broker |
| `edgenode.engine`   | `Engine`, which reports state, applies desired applications and recycles unused object configurations; `gen_system_cert` |
| `edgenode.activate` | `Activate`, `ProofTypeNotSupportedError`, `MasterNodeInfoError` |

## Configuration

`load_config` builds a `Config` from a plain mapping, for instance one read
from a YAML or JSON file. Missing keys take their defaults; durations may be
numbers of seconds or strings such as `"45s"` or `"1m30s"`.

```python
from edgenode.config import load_config

cfg = load_config({
    "init": {
        "batch": {"name": "batch.test", "namespace": "default"},
        "active": {
            "address": "https://activation.example.com",
            "interval": "5s",
            "collector": {
                "fingerprints": [{"proof": "hostName"}],
                "attributes": [{"name": "abc", "value": "abc"}],
            },
        },
    },
    "engine": {"report": {"interval": "20s"}},
})
```

The fingerprint kinds are the members of `Proof`: `input`, `sn`, `hostName`,
`bootID`, `systemUUID` and `machineID`. `load_config` raises `ValueError` for
malformed sections, durations or an event publish QoS other than 0 or 1.

## Shadows

`Report` and `Desire` are dictionaries with typed access to the application
lists they carry:

```python
from edgenode.models import AppInfo, Report

report = Report()
report.set_app_infos(False, [AppInfo("app1", "v1")])
report.app_infos(False)   # [AppInfo(name='app1', version='v1')]
report.app_infos(True)    # None: no system apps recorded
```

## Reconciling applications

The helpers in `edgenode.apps` work on lists and dictionaries of the model
types and change nothing but the mappings they are given.

```python
from edgenode.apps import get_delete_and_update, filter_app_not_like
from edgenode.models import AppInfo

desired = [AppInfo("app1", "v2"), AppInfo("app2", "v1")]
reported = [AppInfo("app1", "v1"), AppInfo("old", "v1")]

delete, update = get_delete_and_update(desired, reported)
# delete: {"old": ...}; update: {"app1": ..., "app2": ...}

user_apps = filter_app_not_like(desired, ["baetyl-core"])
```

`check_service(infos, apps, stats, update)` and
`check_port(infos, apps, stats, update)` inspect applications about to be
applied. When several applications declare a service with the same name, or
several services claim the same host port, the one already running (present
in `stats`) is kept, otherwise the first listed; the others are removed from
`update` and `apps`, and the reason is appended to the cause of their
`InstanceStats` in `stats`. A service with more than one replica may not claim
a host port at all.

`valid_param(tail_lines, since_seconds)` parses the two log query
parameters; empty strings become 0, and anything that is not a non-negative
64-bit integer raises `ValueError`.

## The engine

`Engine(cfg, store, node, sync, ami, security=..., pubsub=..., chain_factory=...)`
brings the collaborators together; its docstring lists the methods each one
must provide. `store` is any mutable mapping from object keys (see
`make_key`) to `Application`, `Configuration` and `Secret` objects.

- `start()` reports every `cfg.report_interval` seconds, deleting applications
  that are no longer desired, and, when a `pubsub` is given, feeds downside
  messages to a `DownsideHandler`. `close()` stops both; the engine is also a
  context manager.
- `report_and_desire()` reports once and applies the desired applications
  without deleting any.
- `collect(ns, is_sys, desire)` returns a `Report` of node info, node stats and
  application stats.
- `get_service_log(service, system, tail_lines, since_seconds)` returns an HTTP
  status and either the log stream from `ami.fetch_log` or an error body
  (400 for bad parameters, 500 for runtime errors).
- `recycle()` deletes object configurations that no reported or desired
  application uses, together with their download directories. It runs on its
  own during reporting when the master node reports disk pressure.

When a `security` object is given, every applied application other than the
core and init services gets a certificate per service, stored as a secret and
mounted read-only. `gen_system_cert(security, cert_dir, app_name, service_name)`
writes the CA, certificate and key for the running service itself.

## Downside commands

`DownsideHandler(pubsub, ami, chain_factory)` acts only when its service name
is `baetyl-core`. Command messages open (`connect`, `logs`) and close
(`disconnect`) debugging chains made by `chain_factory`, or update node labels
(`nodeLabel`, `multiNodeLabels`); data messages are forwarded to an open
chain. Failures are reported on the `upside` topic and raised.

## Events

`EventX(pubsub, mqtt, cfg)` subscribes to the `event` topic and, once started,
hands each message to an `EventHandler`, which publishes non-empty node
property deltas as compact JSON to `cfg.event.publish_topic`.

## Activation

`Activate(cfg, ami)` activates a node that has no certificate yet. With no
listen address configured, `start()` sends an activation request at once and
then every `cfg.init.active.interval` seconds until one succeeds. With a
listen address, it serves a form instead: `handle_view()` renders
`active.html.template` from the pages directory and `handle_update(method,
form)` takes the submitted attributes, activates, and renders
`success.html.template` or `failed.html.template`. On success the CA,
certificate and key are written to the paths in `cfg.node`, and
`wait_and_close()` returns.

`collect()` returns the fingerprint value; it raises `MasterNodeInfoError`
when the node's own info is missing and `ProofTypeNotSupportedError` for an
unknown proof. Requests go over HTTPS with `urllib`, trusting the configured
CA, unless a `transport` callable is passed.

## What the package does not do

- It has no command-line program and no process that runs on its own; an
  application builds the objects and starts them.
- It provides no container runtime access, no persistent store, no pub/sub
  bus, no MQTT client and no certificate authority: all of these are passed in.
- It has no remote debugging backend. Unless a `chain_factory` is given to the
  engine, `connect` and `logs` commands fail with `RuntimeError`.
- It does not download or synchronise application resources; that is the
  job of the `sync` object given to the engine.

## Tests

The test suite uses pytest, installed with the `test` extra:

```
pip install -e .[test]
pytest
```