import os
from datetime import timedelta

import pytest

from kubeansible.watches import (
    Finalizer,
    GroupVersionKind,
    WatchError,
    get_ansible_verbosity,
    get_full_path,
    get_max_concurrent_reconciles,
    get_possible_role_paths,
    load,
    new_watch,
    parse_duration,
    replace_env_variables,
    verify_ansible_path,
    verify_gvk,
)

MEMCACHE = GroupVersionKind("cache.example.com", "v1alpha1", "MemCacheService")


@pytest.fixture
def project(tmp_path, monkeypatch):
    (tmp_path / "playbook.yml").write_text("- hosts: localhost\n")
    (tmp_path / "roles" / "role").mkdir(parents=True)
    monkeypatch.chdir(tmp_path)
    for var in ("ANSIBLE_ROLES_PATH", "ANSIBLE_COLLECTIONS_PATH"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


def write(project, text):
    path = project / "watches.yaml"
    path.write_text(text)
    return str(path)


def test_new_watch_defaults_and_invalid():
    gvk = GroupVersionKind("app.example.com", "v1alpha1", "Example")
    watch = new_watch(gvk, "", "", None, None)
    assert watch.group_version_kind == gvk
    assert watch.max_runner_artifacts == 20
    assert watch.reconcile_period == timedelta(0)
    assert watch.manage_status is True
    assert watch.watch_dependent_resources is True
    assert watch.snake_case_parameters is True
    assert watch.mark_unsafe is False
    assert watch.watch_cluster_scoped_resources is False
    assert watch.ansible_verbosity == 2
    with pytest.raises(WatchError):
        watch.validate()


def test_load_valid(project):
    path = write(project, """
- version: v1alpha1
  group: app.example.com
  kind: NoFinalizer
  playbook: playbook.yml
  reconcilePeriod: 2s
- version: v1alpha1
  group: app.example.com
  kind: WithUnsafeMarked
  playbook: playbook.yml
  markUnsafe: true
- version: v1alpha1
  group: app.example.com
  kind: DisableStatus
  playbook: playbook.yml
  manageStatus: false
- version: v1alpha1
  group: app.example.com
  kind: Role
  role: role
  finalizer:
    name: app.example.com/finalizer
    vars:
      sentinel: finalizer_running
  blacklist:
    - group: app.example.com/1
      version: v1alpha1.1
      kind: AnsibleBlacklistTest_1
  selector:
    matchLabels:
      matchLabel_1: matchLabel_1
    matchExpressions:
      - key: matchexpression_key
        operator: matchexpression_operator
        values: [value1, value2]
""")
    watches = load(path, 1, 2)
    assert [w.group_version_kind.kind for w in watches] == [
        "NoFinalizer", "WithUnsafeMarked", "DisableStatus", "Role"]
    assert watches[0].playbook == str(project / "playbook.yml")
    assert watches[0].reconcile_period == timedelta(seconds=2)
    assert watches[1].mark_unsafe is True
    assert watches[2].manage_status is False
    role = watches[3]
    assert role.role == str(project / "roles" / "role")
    assert role.finalizer.vars == {"sentinel": "finalizer_running"}
    assert role.blacklist[0] == GroupVersionKind("app.example.com/1", "v1alpha1.1", "AnsibleBlacklistTest_1")
    assert role.selector.match_labels == {"matchLabel_1": "matchLabel_1"}
    assert role.selector.match_expressions[0].values == ["value1", "value2"]
    assert role.max_concurrent_reconciles == 1


def test_load_env_overrides(project, monkeypatch):
    monkeypatch.setenv("WORKER_MAXCONCURRENTRECONCILESENV_APP_EXAMPLE_COM", "4")
    monkeypatch.setenv("ANSIBLE_VERBOSITY_ANSIBLEVERBOSITYENV_APP_EXAMPLE_COM", "4")
    path = write(project, """
- {version: v1alpha1, group: app.example.com, kind: MaxConcurrentReconcilesEnv, role: role}
- {version: v1alpha1, group: app.example.com, kind: AnsibleVerbosityEnv, role: role}
""")
    watches = load(path, 1, 2)
    assert watches[0].max_concurrent_reconciles == 4
    assert watches[1].ansible_verbosity == 4


@pytest.mark.parametrize("text", [
    "- {version: v1, group: g, kind: K, playbook: playbook.yml}\n- {version: v1, group: g, kind: K, playbook: playbook.yml}\n",
    "- [unclosed\n",
    "- {version: v1, group: g, kind: K, playbook: missing.yml}\n",
    "- {version: v1, group: g, kind: K, role: missing}\n",
    "- {version: v1, group: g, kind: K, playbook: playbook.yml, finalizer: {playbook: playbook.yml}}\n",
    "- {version: v1, group: g, kind: K, playbook: playbook.yml, finalizer: {name: f, playbook: nope.yml}}\n",
    "- {version: v1, group: g, kind: K, playbook: playbook.yml, finalizer: {name: f}}\n",
    "- {version: v1, group: g, kind: K, playbook: playbook.yml, reconcilePeriod: 10x}\n",
    "- {version: v1, group: g, kind: K, playbook: playbook.yml, manageStatus: sure}\n",
    "- {group: g, kind: K, playbook: playbook.yml}\n",
    "- {version: v1, group: g, kind: K, role: ns.col.role}\n",
])
def test_load_errors(project, text):
    with pytest.raises(WatchError):
        load(write(project, text), 1, 1)


def test_load_missing_file(project):
    with pytest.raises(FileNotFoundError):
        load(str(project / "absent.yaml"), 1, 1)


def test_load_replaces_env_vars(project, monkeypatch):
    monkeypatch.setenv("WATCH_PLAYBOOK", str(project / "playbook.yml"))
    monkeypatch.setenv("WATCH_VERSION", "v123")
    monkeypatch.setenv("WATCH_LABEL", "label123")
    monkeypatch.delenv("WATCH_UNDEFINED_ENV_VAR", raising=False)
    path = write(project, """
- version: ${WATCH_VERSION}
  group: app.example.com
  kind: Env
  playbook: ${WATCH_PLAYBOOK}
  selector:
    matchLabels:
      ${WATCH_LABEL}: x
      undefined: ${WATCH_UNDEFINED_ENV_VAR}
""")
    watch = load(path, 1, 1)[0]
    assert watch.group_version_kind.version == "v123"
    assert watch.selector.match_labels == {"label123": "x", "undefined": "${WATCH_UNDEFINED_ENV_VAR}"}


def test_replace_env_variables(monkeypatch):
    monkeypatch.setenv("FOO", "bar")
    monkeypatch.delenv("NOPE", raising=False)
    assert replace_env_variables("a $FOO ${FOO} ${NOPE} $NOPE") == "a bar bar ${NOPE} ${NOPE}"


@pytest.mark.parametrize("env,default,expected", [
    ({}, 1, 1),
    ({"WORKER_MEMCACHESERVICE_CACHE_EXAMPLE_COM": "0"}, 1, 1),
    ({"WORKER_MEMCACHESERVICE_CACHE_EXAMPLE_COM": "3"}, 1, 3),
    ({"MAX_CONCURRENT_RECONCILES_MEMCACHESERVICE_CACHE_EXAMPLE_COM": "2"}, 1, 2),
    ({"MAX_CONCURRENT_RECONCILES_MEMCACHESERVICE_CACHE_EXAMPLE_COM": "3",
      "WORKER_MEMCACHESERVICE_CACHE_EXAMPLE_COM": "1"}, 1, 3),
])
def test_max_concurrent_reconciles(monkeypatch, env, default, expected):
    monkeypatch.delenv("WORKER_MEMCACHESERVICE_CACHE_EXAMPLE_COM", raising=False)
    monkeypatch.delenv("MAX_CONCURRENT_RECONCILES_MEMCACHESERVICE_CACHE_EXAMPLE_COM", raising=False)
    for k, v in env.items():
        monkeypatch.setenv(k, v)
    assert get_max_concurrent_reconciles(MEMCACHE, default) == expected


@pytest.mark.parametrize("value,expected", [(None, 1), ("-1", 1), ("8", 1), ("3", 3), ("0", 0), ("7", 7)])
def test_ansible_verbosity(monkeypatch, value, expected):
    key = "ANSIBLE_VERBOSITY_MEMCACHESERVICE_CACHE_EXAMPLE_COM"
    monkeypatch.delenv(key, raising=False)
    if value is not None:
        monkeypatch.setenv(key, value)
    assert get_ansible_verbosity(MEMCACHE, 1) == expected


@pytest.mark.parametrize("roles_env,collections_env,path,want", [
    ("", "", "Foo", ["/wd/roles/Foo"]),
    ("", "", "relative/Foo", ["/wd/roles/relative/Foo"]),
    ("relative:nested/relative:/and/abs", "", "Foo", [
        "/wd/roles/Foo", "relative/Foo", "relative/roles/Foo", "nested/relative/Foo",
        "nested/relative/roles/Foo", "/and/abs/Foo", "/and/abs/roles/Foo"]),
    ("", "/my/collections/", "myNS.myCol.myRole", [
        "/wd/roles/myNS.myCol.myRole",
        "/my/collections/ansible_collections/myNS/myCol/roles/myRole"]),
])
def test_possible_role_paths(monkeypatch, roles_env, collections_env, path, want):
    monkeypatch.delenv("ANSIBLE_ROLES_PATH", raising=False)
    monkeypatch.delenv("ANSIBLE_COLLECTIONS_PATH", raising=False)
    if roles_env:
        monkeypatch.setenv("ANSIBLE_ROLES_PATH", roles_env)
    if collections_env:
        monkeypatch.setenv("ANSIBLE_COLLECTIONS_PATH", collections_env)
    assert sorted(get_possible_role_paths("/wd", path)) == sorted(want)


def test_possible_role_paths_default_collections(monkeypatch):
    monkeypatch.delenv("ANSIBLE_ROLES_PATH", raising=False)
    monkeypatch.delenv("ANSIBLE_COLLECTIONS_PATH", raising=False)
    home = os.path.expanduser("~")
    got = get_possible_role_paths("/wd", "myNS.myCol.myRole")
    assert sorted(got) == sorted([
        "/wd/roles/myNS.myCol.myRole",
        "/usr/share/ansible/collections/ansible_collections/myNS/myCol/roles/myRole",
        os.path.join(home, ".ansible/collections/ansible_collections/myNS/myCol/roles/myRole"),
    ])


def test_full_path_and_durations():
    assert get_full_path("/root", "a/b.yml") == "/root/a/b.yml"
    assert get_full_path("/root", "/abs.yml") == "/abs.yml"
    assert parse_duration("1h30m") == timedelta(hours=1, minutes=30)
    assert parse_duration("0") == timedelta(0)
    with pytest.raises(WatchError):
        parse_duration("5")


def test_verifiers(project):
    with pytest.raises(WatchError, match="version"):
        verify_gvk(GroupVersionKind("g", "", "K"))
    with pytest.raises(WatchError, match="kind"):
        verify_gvk(GroupVersionKind("g", "v1", ""))
    with pytest.raises(WatchError, match="must specify"):
        verify_ansible_path("", "")
    w = new_watch(MEMCACHE, "", str(project / "playbook.yml"), None,
                  Finalizer(name="f", vars={"state": "absent"}))
    w.validate()
    assert w.finalizer.name == "f"