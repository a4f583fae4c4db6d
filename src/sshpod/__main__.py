"""Allow running sshpod with python -m sshpod."""

from sshpod.cli import app

app(prog_name="sshpod")
