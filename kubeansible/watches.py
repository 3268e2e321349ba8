"""Mapping of Kubernetes GroupVersionKinds to Ansible playbooks or roles."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import yaml

log = logging.getLogger(__name__)

ANSIBLE_ROLES_PATH_ENV_VAR = "ANSIBLE_ROLES_PATH"
ANSIBLE_COLLECTIONS_PATH_ENV_VAR = "ANSIBLE_COLLECTIONS_PATH"

MAX_RUNNER_ARTIFACTS_DEFAULT = 20
RECONCILE_PERIOD_DEFAULT = timedelta(0)
MANAGE_STATUS_DEFAULT = True
WATCH_DEPENDENT_RESOURCES_DEFAULT = True
WATCH_CLUSTER_SCOPED_RESOURCES_DEFAULT = False
SNAKE_CASE_PARAMETERS_DEFAULT = True
WATCH_ANNOTATIONS_CHANGES_DEFAULT = False
MARK_UNSAFE_DEFAULT = False
MAX_CONCURRENT_RECONCILES_DEFAULT = os.cpu_count() or 1
ANSIBLE_VERBOSITY_DEFAULT = 2


class WatchError(Exception):
    """Raised when a watch is invalid or cannot be loaded."""


@dataclass(frozen=True)
class GroupVersionKind:
    group: str = ""
    version: str = ""
    kind: str = ""

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Kind={self.kind}"


@dataclass
class Finalizer:
    name: str = ""
    playbook: str = ""
    role: str = ""
    vars: dict[str, Any] | None = None


@dataclass
class LabelSelectorRequirement:
    key: str = ""
    operator: str = ""
    values: list[str] = field(default_factory=list)


@dataclass
class LabelSelector:
    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[LabelSelectorRequirement] = field(default_factory=list)


@dataclass
class Watch:
    group_version_kind: GroupVersionKind
    blacklist: list[GroupVersionKind] = field(default_factory=list)
    playbook: str = ""
    role: str = ""
    vars: dict[str, Any] | None = None
    max_runner_artifacts: int = MAX_RUNNER_ARTIFACTS_DEFAULT
    reconcile_period: timedelta = RECONCILE_PERIOD_DEFAULT
    finalizer: Finalizer | None = None
    manage_status: bool = MANAGE_STATUS_DEFAULT
    watch_dependent_resources: bool = WATCH_DEPENDENT_RESOURCES_DEFAULT
    watch_cluster_scoped_resources: bool = WATCH_CLUSTER_SCOPED_RESOURCES_DEFAULT
    snake_case_parameters: bool = SNAKE_CASE_PARAMETERS_DEFAULT
    watch_annotations_changes: bool = WATCH_ANNOTATIONS_CHANGES_DEFAULT
    mark_unsafe: bool = MARK_UNSAFE_DEFAULT
    selector: LabelSelector = field(default_factory=LabelSelector)
    max_concurrent_reconciles: int = MAX_CONCURRENT_RECONCILES_DEFAULT
    ansible_verbosity: int = ANSIBLE_VERBOSITY_DEFAULT

    def validate(self) -> None:
        """Raise WatchError unless the watch points at a usable role or playbook."""
        verify_ansible_path(self.playbook, self.role)
        if self.finalizer is not None:
            if not self.finalizer.name:
                raise WatchError("finalizer must have name")
            try:
                verify_ansible_path(self.finalizer.playbook, self.finalizer.role)
            except WatchError:
                if not self.finalizer.vars:
                    raise

    def _add_role_playbook_paths(self, root_dir: str) -> None:
        if self.playbook:
            self.playbook = get_full_path(root_dir, self.playbook)
        if self.role:
            self.role = _first_existing(get_possible_role_paths(root_dir, self.role), self.role)
        if self.finalizer is not None:
            if self.finalizer.role:
                self.finalizer.role = _first_existing(
                    get_possible_role_paths(root_dir, self.finalizer.role), self.finalizer.role
                )
            if self.finalizer.playbook:
                self.finalizer.playbook = get_full_path(root_dir, self.finalizer.playbook)


def _first_existing(paths: list[str], fallback: str) -> str:
    return next((p for p in paths if os.path.exists(p)), fallback)


def _join(*parts: str) -> str:
    joined = os.path.join(*[p for p in parts if p])
    return os.path.normpath(joined) if joined else ""


def new_watch(gvk, role, playbook, vars, finalizer) -> Watch:
    """Return a Watch with default settings."""
    return Watch(
        group_version_kind=gvk,
        role=role,
        playbook=playbook,
        vars=vars,
        finalizer=finalizer,
    )


def get_full_path(root_dir: str, path: str) -> str:
    """Return path made absolute against root_dir."""
    if path and not os.path.isabs(path):
        return _join(root_dir, path)
    return path


def get_possible_role_paths(root_dir: str, path: str) -> list[str]:
    """List the locations where a role named by the user may live."""
    if not path or os.path.isabs(path):
        return [path]
    candidates: list[str] = []
    fqcn = path.split(".")
    if len(fqcn) == 3:
        collections = os.environ.get(ANSIBLE_COLLECTIONS_PATH_ENV_VAR, "")
        if not collections:
            collections = "/usr/share/ansible/collections"
            home = os.path.expanduser("~")
            if home and home != "~":
                collections += ":" + _join(home, ".ansible/collections")
        for parent in collections.split(":"):
            candidates.append(
                _join(parent, "ansible_collections", fqcn[0], fqcn[1], "roles", fqcn[2])
            )
    roles_env = os.environ.get(ANSIBLE_ROLES_PATH_ENV_VAR, "")
    if roles_env:
        for parent in roles_env.split(":"):
            candidates.append(_join(parent, path))
            candidates.append(_join(parent, "roles", path))
    candidates.append(get_full_path(root_dir, _join("roles", path)))
    return candidates


def verify_gvk(gvk: GroupVersionKind) -> None:
    """Require a version and a kind; the group may be empty."""
    if not gvk.version:
        raise WatchError("version must not be empty")
    if not gvk.kind:
        raise WatchError("kind must not be empty")


def verify_ansible_path(playbook: str, role: str) -> None:
    """Require that the playbook or, failing that, the role exists."""
    if playbook:
        if not os.path.exists(playbook):
            raise WatchError(f"playbook: {playbook} was not found")
    elif role:
        if not os.path.exists(role):
            raise WatchError(f"role: {role} was not found")
    else:
        raise WatchError("must specify Role or Playbook")


_INT_RE = re.compile(r"[+-]?\d+")


def _parse_int(value: str) -> int | None:
    return int(value) if _INT_RE.fullmatch(value) else None


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        log.info("Environment variable %s not set; using default value %s", name, default)
        return default
    parsed = _parse_int(raw)
    if parsed is None:
        log.info("Could not parse %s as an integer; using default value %s", name, default)
        return default
    return parsed


def _env_name(prefix: str, gvk: GroupVersionKind) -> str:
    return f"{prefix}_{gvk.kind}_{gvk.group}".replace(".", "_").upper()


def get_max_concurrent_reconciles(gvk: GroupVersionKind, default: int) -> int:
    """Read the per-GVK reconcile concurrency from the environment."""
    worker_var = _env_name("WORKER", gvk)
    recon_var = _env_name("MAX_CONCURRENT_RECONCILES", gvk)
    value = default
    if recon_var in os.environ:
        value = _int_env(recon_var, default)
    elif worker_var in os.environ:
        log.info("Environment variable %s is deprecated, use %s instead", worker_var, recon_var)
        value = _int_env(worker_var, default)
    if value <= 0:
        log.info("Value %s not valid. Using default %s", value, default)
        return default
    return value


def get_ansible_verbosity(gvk: GroupVersionKind, default: int) -> int:
    """Read the per-GVK Ansible verbosity (0 to 7) from the environment."""
    value = _int_env(_env_name("ANSIBLE_VERBOSITY", gvk), default)
    if value < 0 or value > 7:
        log.info("Value %s not valid. Using default %s", value, default)
        return default
    return value


_ENV_REF = re.compile(r"\$(?:\{([^}]*)\}|([*#$@!?\-0-9])|([A-Za-z_][A-Za-z0-9_]*))")


def replace_env_variables(text: str) -> str:
    """Expand $VAR and ${VAR}; undefined variables are kept as ${VAR}."""

    def substitute(match: re.Match) -> str:
        name = match.group(1) if match.group(1) is not None else (match.group(2) or match.group(3))
        if not name:
            return ""
        value = os.environ.get(name)
        return "${" + name + "}" if value is None else value

    return _ENV_REF.sub(substitute, text)


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(value: str) -> timedelta:
    """Parse a duration such as "1h30m" or "2s"."""
    if not isinstance(value, str):
        raise WatchError(f"invalid duration {value!r}")
    text = value
    sign = 1
    if text[:1] in "+-" and text:
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise WatchError(f"invalid duration {value!r}")
    seconds = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise WatchError(f"invalid duration {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return timedelta(seconds=sign * seconds)


def _opt_bool(entry: dict, key: str, default: bool) -> bool:
    value = entry.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise WatchError(f"{key} must be a boolean, got {value!r}")
    return value


def _opt_str(entry: dict, key: str) -> str:
    value = entry.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise WatchError(f"{key} must be a string, got {value!r}")
    return value


def _opt_map(entry: dict, key: str) -> dict | None:
    value = entry.get(key)
    if value is not None and not isinstance(value, dict):
        raise WatchError(f"{key} must be a mapping")
    return value


def _gvk_from(entry: dict) -> GroupVersionKind:
    return GroupVersionKind(
        group=_opt_str(entry, "group"),
        version=_opt_str(entry, "version"),
        kind=_opt_str(entry, "kind"),
    )


def _selector_from(raw: Any) -> LabelSelector:
    if raw is None:
        return LabelSelector()
    if not isinstance(raw, dict):
        raise WatchError("selector must be a mapping")
    labels = _opt_map(raw, "matchLabels") or {}
    expressions = []
    for expr in raw.get("matchExpressions") or []:
        if not isinstance(expr, dict):
            raise WatchError("matchExpressions entries must be mappings")
        expressions.append(
            LabelSelectorRequirement(
                key=_opt_str(expr, "key"),
                operator=_opt_str(expr, "operator"),
                values=[str(v) for v in expr.get("values") or []],
            )
        )
    return LabelSelector(
        match_labels={str(k): str(v) for k, v in labels.items()},
        match_expressions=expressions,
    )


def _finalizer_from(raw: Any) -> Finalizer | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise WatchError("finalizer must be a mapping")
    return Finalizer(
        name=_opt_str(raw, "name"),
        playbook=_opt_str(raw, "playbook"),
        role=_opt_str(raw, "role"),
        vars=_opt_map(raw, "vars"),
    )


def _watch_from_entry(entry: Any, max_reconciles: int, verbosity: int) -> Watch:
    if not isinstance(entry, dict):
        raise WatchError("each watch must be a mapping")
    gvk = _gvk_from(entry)
    try:
        verify_gvk(gvk)
    except WatchError as exc:
        raise WatchError(f"invalid GVK: {gvk}: {exc}") from exc

    artifacts = entry.get("maxRunnerArtifacts") or 0
    if not isinstance(artifacts, int) or isinstance(artifacts, bool):
        raise WatchError("maxRunnerArtifacts must be an integer")
    period_raw = entry.get("reconcilePeriod")
    period = RECONCILE_PERIOD_DEFAULT if period_raw is None else parse_duration(period_raw)
    blacklist_raw = entry.get("blacklist") or []
    if not isinstance(blacklist_raw, list) or not all(isinstance(b, dict) for b in blacklist_raw):
        raise WatchError("blacklist must be a list of mappings")

    watch = Watch(
        group_version_kind=gvk,
        blacklist=[_gvk_from(b) for b in blacklist_raw],
        playbook=_opt_str(entry, "playbook"),
        role=_opt_str(entry, "role"),
        vars=_opt_map(entry, "vars"),
        max_runner_artifacts=artifacts or MAX_RUNNER_ARTIFACTS_DEFAULT,
        reconcile_period=period,
        finalizer=_finalizer_from(entry.get("finalizer")),
        manage_status=_opt_bool(entry, "manageStatus", MANAGE_STATUS_DEFAULT),
        watch_dependent_resources=_opt_bool(
            entry, "watchDependentResources", WATCH_DEPENDENT_RESOURCES_DEFAULT
        ),
        watch_cluster_scoped_resources=_opt_bool(
            entry, "watchClusterScopedResources", WATCH_CLUSTER_SCOPED_RESOURCES_DEFAULT
        ),
        snake_case_parameters=_opt_bool(
            entry, "snakeCaseParameters", SNAKE_CASE_PARAMETERS_DEFAULT
        ),
        watch_annotations_changes=_opt_bool(
            entry, "watchAnnotationsChanges", WATCH_ANNOTATIONS_CHANGES_DEFAULT
        ),
        mark_unsafe=_opt_bool(entry, "markUnsafe", MARK_UNSAFE_DEFAULT),
        selector=_selector_from(entry.get("selector")),
        max_concurrent_reconciles=get_max_concurrent_reconciles(gvk, max_reconciles),
        ansible_verbosity=get_ansible_verbosity(gvk, verbosity),
    )
    watch._add_role_playbook_paths(os.getcwd())
    return watch


def load(path, max_concurrent_reconciles, ansible_verbosity) -> list[Watch]:
    """Load and validate the watches file at path."""
    with open(path, encoding="utf-8") as handle:
        text = replace_env_variables(handle.read())
    try:
        entries = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise WatchError(f"failed to parse watches file: {exc}") from exc
    if entries is None:
        entries = []
    if not isinstance(entries, list):
        raise WatchError("watches file must hold a list")

    watches = [
        _watch_from_entry(e, max_concurrent_reconciles, ansible_verbosity) for e in entries
    ]
    seen: set[GroupVersionKind] = set()
    for watch in watches:
        if watch.group_version_kind in seen:
            raise WatchError(f"duplicate GVK: {watch.group_version_kind}")
        seen.add(watch.group_version_kind)
        watch.validate()
    return watches