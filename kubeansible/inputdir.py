"""Input directory layout consumed by ansible-runner."""

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)

_JSON_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


def _encode_json(value: Any) -> bytes:
    text = json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    )
    for char, escape in _JSON_ESCAPES:
        text = text.replace(char, escape)
    return text.encode("utf-8")


@dataclass
class InputDir:
    """An ansible-runner private data directory and the values to put in it."""

    path: str
    playbook_path: str = ""
    parameters: dict[str, Any] | None = field(default_factory=dict)
    env_vars: dict[str, str] | None = field(default_factory=dict)
    settings: dict[str, str] | None = field(default_factory=dict)
    cmdline: str = ""

    def _add_file(self, relative: str, content: bytes) -> None:
        full_path = os.path.join(self.path, relative)
        try:
            with open(full_path, "wb") as handle:
                handle.write(content)
        except OSError:
            log.error("Unable to write file %s", full_path)
            raise

    def _copy_inventory(self, source: str, destination: str, mode: int) -> None:
        if stat.S_ISDIR(mode):
            shutil.copytree(source, destination, dirs_exist_ok=True)
        elif stat.S_ISREG(mode):
            shutil.copy(source, destination)

    def write(self) -> None:
        """Write the directory tree, variables, inventory and playbook to disk."""
        parameters = _encode_json(self.parameters)
        env_vars = _encode_json(self.env_vars)
        settings = _encode_json(self.settings)

        for sub in ("env", "project", "inventory"):
            os.makedirs(os.path.join(self.path, sub), exist_ok=True)

        self._add_file("env/envvars", env_vars)
        self._add_file("env/extravars", parameters)
        self._add_file("env/settings", settings)

        cmdline = self.cmdline
        if cmdline.startswith("'") and cmdline[0] == cmdline[-1]:
            cmdline = cmdline[1:-1]
        if cmdline:
            self._add_file("env/cmdline", cmdline.encode("utf-8"))

        # An inventory given through ANSIBLE_INVENTORY replaces the generated hosts file.
        inventory = os.environ.get("ANSIBLE_INVENTORY", "")
        if not inventory:
            venv = os.environ.get("VIRTUAL_ENV", "")
            interpreter = (
                os.path.normpath(os.path.join(venv, "bin", "python3"))
                if venv
                else "{{ansible_playbook_python}}"
            )
            hosts = f"localhost ansible_connection=local ansible_python_interpreter={interpreter}"
            self._add_file("inventory/hosts", hosts.encode("utf-8"))
        else:
            mode = os.stat(inventory).st_mode
            if stat.S_ISDIR(mode):
                self._copy_inventory(inventory, os.path.join(self.path, "inventory"), mode)
            elif stat.S_ISREG(mode):
                self._copy_inventory(inventory, os.path.join(self.path, "inventory", "hosts"), mode)

        if self.playbook_path:
            try:
                with open(self.playbook_path, "rb") as handle:
                    playbook = handle.read()
            except OSError:
                log.error("Failed to open playbook file %s", self.playbook_path)
                raise
            self._add_file("project/playbook.yaml", playbook)

    def stdout(self, ident: str) -> str:
        """Return the stdout artifact of the run with the given ident."""
        path = os.path.join(self.path, "artifacts", ident, "stdout")
        with open(path, "rb") as handle:
            return handle.read().decode("utf-8", errors="replace")