"""Runs ansible-runner for a watched resource and reports on the run."""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from .eventapi import EventReceiver
from .events import JobEvent
from .inputdir import InputDir
from .watches import Finalizer, GroupVersionKind, Watch

log = logging.getLogger(__name__)

# Annotation overriding the number of artifact directories kept for one resource.
# Zero keeps every artifact directory.
MAX_RUNNER_ARTIFACTS_ANNOTATION = "ansible.sdk.operatorframework.io/max-runner-artifacts"
# Annotation overriding the ansible-runner verbosity for one resource.
ANSIBLE_VERBOSITY_ANNOTATION = "ansible.sdk.operatorframework.io/verbosity"

ANSIBLE_RUNNER_BIN = "ansible-runner"
RUNNER_DIR_DEFAULT = "/tmp/ansible-operator/runner"
SOCKET_DIR_DEFAULT = "/tmp"

CmdFunc = Callable[[str, str, int, int], list[str]]

_INT_RE = re.compile(r"[+-]?\d+")


def ansible_verbosity_string(verbosity: int) -> str:
    """Return the -v flag for a verbosity level, or "" for the default of 0."""
    if verbosity > 0:
        return "-" + "v" * verbosity
    return ""


def playbook_cmd_func(path: str) -> CmdFunc:
    """Return a function building the ansible-runner command line for a playbook."""

    def build(ident: str, input_dir_path: str, max_artifacts: int, verbosity: int) -> list[str]:
        argv = [
            ANSIBLE_RUNNER_BIN,
            "run",
            input_dir_path,
            "--rotate-artifacts",
            str(max_artifacts),
            "-p",
            path,
            "-i",
            ident,
        ]
        if verbosity > 0:
            argv.append(ansible_verbosity_string(verbosity))
        return argv

    return build


def _split_path(path: str) -> tuple[str, str]:
    cut = path.rfind("/") + 1
    return path[:cut], path[cut:]


def role_cmd_func(path: str) -> CmdFunc:
    """Return a function building the ansible-runner command line for a role."""
    role_path, role_name = _split_path(path)

    def build(ident: str, input_dir_path: str, max_artifacts: int, verbosity: int) -> list[str]:
        argv = [
            ANSIBLE_RUNNER_BIN,
            "run",
            input_dir_path,
            "--rotate-artifacts",
            str(max_artifacts),
            "--role",
            role_name,
            "--roles-path",
            role_path,
            "--hosts",
            "localhost",
            "-i",
            ident,
        ]
        if verbosity > 0:
            argv.append(ansible_verbosity_string(verbosity))
        # ansible-runner ignores ANSIBLE_GATHERING when running a role directly.
        if os.environ.get("ANSIBLE_GATHERING", "") == "explicit":
            argv.append("--role-skip-facts")
        return argv

    return build


def mark_unsafe(values: Any) -> Any:
    """Wrap every string, recursively, as {"__ansible_unsafe": value}."""
    if isinstance(values, list):
        return [mark_unsafe(item) for item in values]
    if isinstance(values, dict):
        return {key: mark_unsafe(item) for key, item in values.items()}
    if isinstance(values, str):
        return {"__ansible_unsafe": values}
    return values


def escape_ansible_key(key: str) -> str:
    """Replace characters Ansible cannot use in a variable name with underscores."""
    for char in (".", "-"):
        key = key.replace(char, "_")
    return key


def _metadata(obj: dict) -> dict:
    meta = obj.get("metadata") if isinstance(obj, dict) else None
    return meta if isinstance(meta, dict) else {}


def _annotation_int(annotations: dict, key: str, default: int, what: str) -> int:
    if key not in annotations:
        return default
    raw = str(annotations[key])
    if not _INT_RE.fullmatch(raw):
        log.info("Invalid %s annotation: %r", what, raw)
        return default
    return int(raw)


class RunResult:
    """Access to the events and output of one ansible-runner run."""

    def __init__(self, events: Iterator[JobEvent], input_dir: InputDir, ident: str) -> None:
        self._events = events
        self._input_dir = input_dir
        self._ident = ident

    def stdout(self) -> str:
        """Return the run's stdout artifact; raise OSError if it is not there."""
        return self._input_dir.stdout(self._ident)

    def events(self) -> Iterator[JobEvent]:
        """Yield the job events of the run until it ends."""
        return self._events


@dataclass
class Runner:
    """Runs the playbook or role mapped to one watched GVK."""

    path: str = ""
    gvk: GroupVersionKind = GroupVersionKind()
    finalizer: Finalizer | None = None
    vars: dict[str, Any] | None = None
    cmd_func: CmdFunc | None = None
    finalizer_cmd_func: CmdFunc | None = None
    max_runner_artifacts: int = 0
    ansible_verbosity: int = 0
    snake_case_parameters: bool = False
    mark_unsafe: bool = False
    ansible_args: str = ""
    to_snake: Callable[[dict], dict] | None = None
    runner_dir: str = RUNNER_DIR_DEFAULT
    socket_dir: str = SOCKET_DIR_DEFAULT

    def run(self, ident: str, obj: dict, kubeconfig: str) -> RunResult:
        """Start ansible-runner for obj in the background and return its result handle."""
        if shutil.which(ANSIBLE_RUNNER_BIN) is None:
            raise FileNotFoundError(f"{ANSIBLE_RUNNER_BIN}: executable file not found in PATH")

        meta = _metadata(obj)
        if meta.get("deletionTimestamp") is not None and not self.is_finalizer_run(obj):
            raise RuntimeError(
                "resource has been deleted, but no finalizer was matched, skipping reconciliation"
            )
        name = meta.get("name", "") or ""
        namespace = meta.get("namespace", "") or ""

        receiver = EventReceiver(ident, self.socket_dir)
        try:
            input_dir = InputDir(
                path=os.path.join(
                    self.runner_dir,
                    self.gvk.group,
                    self.gvk.version,
                    self.gvk.kind,
                    namespace,
                    name,
                ),
                parameters=self.make_parameters(obj),
                env_vars={"K8S_AUTH_KUBECONFIG": kubeconfig, "KUBECONFIG": kubeconfig},
                settings={
                    "runner_http_url": receiver.socket_path,
                    "runner_http_path": receiver.url_path,
                },
                cmdline=self.ansible_args,
            )
            # A directory is a role; anything else is taken for a playbook.
            if not os.path.isdir(self.path) or os.path.islink(self.path):
                os.lstat(self.path)
                input_dir.playbook_path = self.path
            input_dir.write()
        except BaseException:
            receiver.close()
            raise

        annotations = meta.get("annotations") or {}
        max_artifacts = _annotation_int(
            annotations,
            MAX_RUNNER_ARTIFACTS_ANNOTATION,
            self.max_runner_artifacts,
            "max runner artifact",
        )
        verbosity = _annotation_int(
            annotations, ANSIBLE_VERBOSITY_ANNOTATION, self.ansible_verbosity, "ansible verbosity"
        )

        if self.is_finalizer_run(obj):
            log.debug("Resource is marked for deletion, running finalizer %s", self.finalizer.name)
            cmd_func = self.finalizer_cmd_func
        else:
            cmd_func = self.cmd_func
        argv = cmd_func(ident, input_dir.path, max_artifacts, verbosity)

        threading.Thread(
            target=self._execute,
            args=(argv, kubeconfig, receiver, input_dir.path, ident),
            name=f"ansible-runner-{ident}",
            daemon=True,
        ).start()
        return RunResult(iter(receiver), input_dir, ident)

    def _execute(
        self,
        argv: list[str],
        kubeconfig: str,
        receiver: EventReceiver,
        input_dir_path: str,
        ident: str,
    ) -> None:
        env = {**os.environ, "K8S_AUTH_KUBECONFIG": kubeconfig, "KUBECONFIG": kubeconfig}
        try:
            completed = subprocess.run(
                argv, env=env, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False
            )
        except OSError as exc:
            log.error("Failed to start ansible-runner (job %s): %s", ident, exc)
        else:
            output = completed.stdout.decode("utf-8", errors="replace")
            if completed.returncode != 0:
                log.error("ansible-runner failed (job %s): %s", ident, output)
            else:
                log.info("Ansible-runner exited successfully (job %s)", ident)

        receiver.close()
        error = receiver.wait()
        if error is not None:
            log.error("Error from event API (job %s): %s", ident, error)

        current_run = os.path.join(input_dir_path, "artifacts", ident)
        latest = os.path.join(input_dir_path, "artifacts", "latest")
        try:
            if os.path.lexists(latest):
                os.remove(latest)
        except OSError as exc:
            log.error("Error removing the latest artifacts symlink: %s", exc)
            return
        try:
            os.symlink(current_run, latest)
        except OSError as exc:
            log.error("Error symlinking latest artifacts: %s", exc)

    def is_finalizer_run(self, obj: dict) -> bool:
        """Whether obj is being deleted and still carries this runner's finalizer."""
        if self.finalizer is None:
            return False
        meta = _metadata(obj)
        finalizers = meta.get("finalizers")
        if finalizers is None or meta.get("deletionTimestamp") is None:
            return False
        return self.finalizer.name in finalizers

    def make_parameters(self, obj: dict) -> dict[str, Any]:
        """Build the extra variables handed to Ansible for obj."""
        spec = obj.get("spec") if isinstance(obj, dict) else None
        if not isinstance(spec, dict):
            meta = _metadata(obj)
            log.info(
                "Spec was not found for CR %s in namespace %r, name %r",
                self.gvk,
                meta.get("namespace", ""),
                meta.get("name", ""),
            )
            spec = {}

        if self.snake_case_parameters and self.to_snake is not None:
            parameters = dict(self.to_snake(spec))
        else:
            parameters = dict(spec)

        if self.mark_unsafe:
            parameters = {key: mark_unsafe(value) for key, value in parameters.items()}

        meta = _metadata(obj)
        parameters["ansible_operator_meta"] = {
            "namespace": meta.get("namespace", "") or "",
            "name": meta.get("name", "") or "",
        }

        obj_key = escape_ansible_key(f"_{self.gvk.group}_{self.gvk.kind.lower()}")
        parameters[obj_key] = obj
        parameters[f"{obj_key}_spec"] = mark_unsafe(spec) if self.mark_unsafe else spec

        parameters.update(self.vars or {})
        if self.is_finalizer_run(obj):
            parameters.update(self.finalizer.vars or {})
        return parameters

    def get_finalizer(self) -> str | None:
        """Return the finalizer name, or None if there is no finalizer."""
        return self.finalizer.name if self.finalizer is not None else None


def new_runner(
    watch: Watch,
    runner_args: str = "",
    to_snake: Callable[[dict], dict] | None = None,
) -> Runner:
    """Create a Runner from a validated Watch.

    to_snake converts spec keys to snake case when the watch asks for it;
    without it the keys are passed through unchanged.
    """
    try:
        watch.validate()
    except Exception:
        log.error("Failed to validate watch for %s", watch.group_version_kind)
        raise

    path = ""
    cmd_func: CmdFunc | None = None
    if watch.playbook:
        path = watch.playbook
        cmd_func = playbook_cmd_func(path)
    elif watch.role:
        path = watch.role
        cmd_func = role_cmd_func(path)

    finalizer = watch.finalizer
    if finalizer is None:
        finalizer_cmd_func = None
    elif finalizer.playbook:
        finalizer_cmd_func = playbook_cmd_func(finalizer.playbook)
    elif finalizer.role:
        finalizer_cmd_func = role_cmd_func(finalizer.role)
    else:
        finalizer_cmd_func = cmd_func

    return Runner(
        path=path,
        gvk=watch.group_version_kind,
        finalizer=finalizer,
        vars=watch.vars,
        cmd_func=cmd_func,
        finalizer_cmd_func=finalizer_cmd_func,
        max_runner_artifacts=watch.max_runner_artifacts,
        ansible_verbosity=watch.ansible_verbosity,
        snake_case_parameters=watch.snake_case_parameters,
        mark_unsafe=watch.mark_unsafe,
        ansible_args=runner_args,
        to_snake=to_snake,
    )