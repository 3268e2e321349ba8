# kubeansible

Building blocks for a Kubernetes operator whose reconcile logic is written as
Ansible playbooks or roles and run through `ansible-runner`.

## What it covers

- **`kubeansible.watches`**: `load()` reads a `watches.yaml` file that maps
  group/version/kind to a playbook or role. It fills in defaults, expands
  `$VAR` and `${VAR}` references (undefined ones are kept as `${VAR}`), looks
  for roles on `ANSIBLE_ROLES_PATH`, `ANSIBLE_COLLECTIONS_PATH` and `roles/`
  under the working directory, rejects duplicate kinds and validates each
  `Watch`. Problems raise `WatchError`. `new_watch()` builds a `Watch` with
  default settings, and `parse_duration()` reads values such as `"1h30m"`.
- **`kubeansible.events`**: `JobEvent`, `StatusJobEvent` and `StatsEventData`,
  the events that ansible-runner posts, built with `from_dict()`.
  `JobEvent.failed_playbook_message()`, `ignore_error()` and `rescued()` read
  the failure message, the `ignore_errors` flag and the rescued state.
  `parse_event_time()` and `format_event_time()` handle the timestamps.
- **`kubeansible.eventapi`**: `EventReceiver` serves HTTP on a Unix socket
  (`<socket_dir>/ansibleoperator-<ident>`). It accepts JSON `POST`s on
  `/events/`, queues events that carry a `uuid`, and yields them when iterated
  until it is closed and drained. It is a context manager; `close()` stops it
  and removes the socket.
- **`kubeansible.inputdir`**: `InputDir.write()` creates the private data
  directory that ansible-runner reads: `env/extravars`, `env/envvars`,
  `env/settings`, `env/cmdline`, the inventory and `project/playbook.yaml`.
  `InputDir.stdout()` reads a run's stdout artifact.
- **`kubeansible.runner`**: `new_runner()` turns a `Watch` into a `Runner`.
  `Runner.run()` writes the input directory, starts ansible-runner in the
  background and returns a `RunResult` whose `events()` yields the job events
  and whose `stdout()` returns the output artifact. After the run, the
  `artifacts/latest` link points at the run's artifacts. `mark_unsafe()` and
  `escape_ansible_key()` are available on their own.
- **`kubeansible.fake`**: `FakeRunner` and `FakeRunResult` replay a fixed list
  of events, for tests of code that uses a runner.

## Installing

```
pip install kubeansible
```

`ansible-runner` must be on `PATH` before `Runner.run()` can be used.

## Example

```python
from kubeansible.watches import load
from kubeansible.runner import new_runner

watches = load("watches.yaml", max_concurrent_reconciles=1, ansible_verbosity=2)
for watch in watches:
    runner = new_runner(watch, "")
    print(watch.group_version_kind, runner.get_finalizer())
```

To run a reconcile for one custom resource, given as a dict:

```python
result = runner.run("job-1", custom_resource, "/path/to/kubeconfig")
for event in result.events():
    print(event.event, event.failed_playbook_message())
```

By default the input directory goes under `/tmp/ansible-operator/runner` and
the socket under `/tmp`; set `Runner.runner_dir` and `Runner.socket_dir` to
change them.

## Environment variables

- `MAX_CONCURRENT_RECONCILES_<KIND>_<GROUP>` (or the deprecated
  `WORKER_<KIND>_<GROUP>`) sets the number of concurrent reconciles for a kind.
- `ANSIBLE_VERBOSITY_<KIND>_<GROUP>` sets the verbosity for a kind, from 0 to 7.
- `ANSIBLE_ROLES_PATH` and `ANSIBLE_COLLECTIONS_PATH` are searched for roles.
- `ANSIBLE_INVENTORY`, if set, is copied into the runner directory. Without it,
  a local `hosts` file is generated, using `VIRTUAL_ENV` for the interpreter
  when it is set.
- `ANSIBLE_GATHERING=explicit` adds `--role-skip-facts` when running a role.

The annotations `ansible.sdk.operatorframework.io/max-runner-artifacts` and
`ansible.sdk.operatorframework.io/verbosity` on a resource override the
watch's artifact count and verbosity for that resource.

## What it does not do

The package has no command line and no operator process of its own: it does
not connect to a Kubernetes cluster, watch resources, run a controller loop,
update status or proxy API requests. Snake-casing of spec keys is not built
in; pass a converter as `to_snake` to `new_runner()`, otherwise keys are
passed through unchanged.

## Running the tests

```
pip install -e .[test]
pytest
```