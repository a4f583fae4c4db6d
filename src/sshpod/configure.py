"""Writes the sshpod block into ~/.ssh/config."""

from __future__ import annotations

import os
import shutil
import sys
import time
from pathlib import Path

START_MARKER = "# >>> sshpod start"
END_MARKER = "# <<< sshpod end"


def default_executable() -> str:
    """Return the command ssh should run as ProxyCommand."""
    found = shutil.which("sshpod")
    if found:
        return found
    return str(Path(sys.argv[0]).resolve())


def render_block(executable: str, identity_file: str = "~/.cache/sshpod/id_ed25519") -> str:
    """Render the managed ssh config block.

    Args:
        executable: Path of the sshpod executable.
        identity_file: Client private key path as ssh should see it.

    Returns:
        Block text including start and end markers.
    """
    return "\n".join([
        START_MARKER,
        "Host *.sshpod",
        f"  ProxyCommand {executable} proxy --host %h --user %r --port %p",
        "  StrictHostKeyChecking no",
        "  UserKnownHostsFile /dev/null",
        "  GlobalKnownHostsFile /dev/null",
        "  CheckHostIP no",
        f"  IdentityFile {identity_file}",
        "  IdentitiesOnly yes",
        "  BatchMode yes",
        "  ForwardAgent yes",
        END_MARKER,
    ]) + "\n"


def merge_config(current: str, block: str) -> str:
    """Replace an existing sshpod block, or append one.

    Args:
        current: Current config file contents.
        block: Rendered block.

    Returns:
        Updated config contents.
    """
    start = current.find(START_MARKER)
    if start != -1:
        end = current.find(END_MARKER, start)
        if end != -1:
            end += len(END_MARKER)
            if current[end:end + 1] == "\n":
                end += 1
            return current[:start] + block + current[end:]

    if not current:
        return block
    separator = "\n" if current.endswith("\n") else "\n\n"
    return current + separator + block


def write_ssh_config(ssh_dir: Path, executable: str) -> tuple[Path, Path | None] | None:
    """Install or update the sshpod block.

    Args:
        ssh_dir: The ~/.ssh directory.
        executable: Path of the sshpod executable.

    Returns:
        (config path, backup path or None), or None when nothing changed.
    """
    ssh_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(ssh_dir, 0o700)

    config_path = ssh_dir / "config"
    current = config_path.read_text() if config_path.exists() else ""
    updated = merge_config(current, render_block(executable))
    if updated == current:
        return None

    timestamp = int(time.time())
    backup_path: Path | None = None
    if config_path.exists():
        backup_path = ssh_dir / f"config.bak.{timestamp}"
        shutil.copy2(config_path, backup_path)

    tmp_path = ssh_dir / f"config.tmp.{timestamp}"
    tmp_path.write_text(updated)
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, config_path)

    return config_path, backup_path
