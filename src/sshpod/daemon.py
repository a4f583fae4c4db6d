"""Supervision of the sshd running inside the container."""

from __future__ import annotations

import logging

from sshpod.cluster.base import ClusterControl
from sshpod.exceptions import ClusterError, DaemonStartFailedError
from sshpod.keys import HOST_KEY_NAME
from sshpod.resolver import ResolvedEndpoint

logger = logging.getLogger(__name__)

# A start lock with no recorded holder is only legitimate for the moment
# between mkdir and writing the pid.
OWNERLESS_LOCK_SECONDS = 5

# Prints the loopback port on the saved stdout (fd 3); everything else goes
# to stderr. sshd.port is written only after sshd is alive, so a failed
# start is never mistaken for a running daemon.
START_SSHD_SCRIPT = f"""\
set -eu
B="$1"
RESTART="$2"
SSHD="$B/bundle/sshd"
exec 3>&1
exec 1>&2

log() {{ printf '[sshpod] %s\\n' "$1" >&2; }}

umask 077
mkdir -p "$B/logs" "$B/hostkeys"
chmod 700 "$B" "$B/logs" "$B/hostkeys"

# Serialize racing starters; the loser reuses the winner's daemon. The
# holder's pid lives in the lock, so a lock left by a killed starter is
# taken over as soon as its holder is gone.
LOCK="$B/start.lock"
n=0
until mkdir "$LOCK" 2>/dev/null; do
  holder="$(cat "$LOCK/pid" 2>/dev/null || true)"
  if [ -n "$holder" ]; then
    n=0
    if ! kill -0 "$holder" 2>/dev/null; then
      log "removing start lock of exited process $holder"
      rm -rf "$LOCK"
      continue
    fi
  else
    n=$((n+1))
    if [ $n -ge {OWNERLESS_LOCK_SECONDS} ]; then
      log "removing start lock without owner"
      rm -rf "$LOCK"
      n=0
      continue
    fi
  fi
  sleep 1
done
trap 'rm -rf "$LOCK"' EXIT
echo $$ > "$LOCK/pid"

running() {{
  [ -f "$B/sshd.pid" ] && kill -0 "$(cat "$B/sshd.pid")" 2>/dev/null
}}

if [ "$RESTART" = 1 ] && running; then
  log "stopping previous sshd"
  kill "$(cat "$B/sshd.pid")" 2>/dev/null || true
  sleep 1
  rm -f "$B/sshd.pid" "$B/sshd.port"
fi

if running && [ -s "$B/sshd.port" ]; then
  log "sshd already running"
  cat "$B/sshd.port" >&3
  exit 0
fi
rm -f "$B/sshd.port"

if [ ! -s "$B/hostkeys/{HOST_KEY_NAME}" ]; then
  echo "host key missing at $B/hostkeys/{HOST_KEY_NAME}" >&2
  exit 1
fi
if [ ! -x "$SSHD" ]; then
  echo "sshd missing at $SSHD" >&2
  exit 1
fi

mkdir -p /tmp/empty
chmod 755 /tmp/empty 2>/dev/null || true

# sshd refuses to start as root without its privilege separation user
if [ "$(id -u)" = 0 ] && ! grep -q '^sshd:' /etc/passwd 2>/dev/null; then
  log "creating sshd user"
  if command -v useradd >/dev/null 2>&1; then
    useradd -r -M -d /tmp/empty -s /sbin/nologin sshd || true
  elif command -v adduser >/dev/null 2>&1; then
    adduser -D -H -s /sbin/nologin -h /tmp/empty sshd || true
  fi
fi

rand_port() {{
  val="$(od -An -N2 -tu2 /dev/urandom | tr -d ' ')"
  echo $((20000 + (val % 45000)))
}}

REMOTE_PATH="${{PATH:-/usr/bin:/bin}}"
ENV_KEYS="$(env | awk -F= '/^KUBERNETES_/ {{print $1}}')"

i=0
while [ $i -lt 30 ]; do
  i=$((i+1))
  PORT="$(rand_port)"
  cat > "$B/sshd_config" <<EOF
ListenAddress 127.0.0.1
Port $PORT
HostKey $B/hostkeys/{HOST_KEY_NAME}
PidFile $B/sshd.pid
AuthorizedKeysFile $B/authorized_keys
PubkeyAuthentication yes
StrictModes no
PasswordAuthentication no
KbdInteractiveAuthentication no
PermitEmptyPasswords no
AllowAgentForwarding yes
AllowTcpForwarding yes
X11Forwarding no
Subsystem sftp internal-sftp
LogLevel VERBOSE
EOF
  printf 'SetEnv PATH=%s\\n' "$REMOTE_PATH" >> "$B/sshd_config"
  for key in $ENV_KEYS; do
    printf 'SetEnv %s=%s\\n' "$key" "$(printenv "$key" || true)" >> "$B/sshd_config"
  done
  if [ -n "${{KUBECONFIG:-}}" ]; then
    printf 'SetEnv KUBECONFIG=%s\\n' "$KUBECONFIG" >> "$B/sshd_config"
  fi
  chmod 600 "$B/sshd_config"
  rm -f "$B/sshd.pid"

  log "launching sshd on 127.0.0.1:$PORT"
  "$SSHD" -f "$B/sshd_config" -E "$B/logs/sshd.log" </dev/null 3>&- || true
  j=0
  while [ $j -lt 10 ]; do
    if running; then
      echo "$PORT" > "$B/sshd.port.tmp"
      mv -f "$B/sshd.port.tmp" "$B/sshd.port"
      chmod 600 "$B/sshd.pid" "$B/sshd.port"
      echo "$PORT" >&3
      exit 0
    fi
    j=$((j+1))
    sleep 1
  done
  log "retrying sshd start (attempt $i)"
done

echo "sshd did not start; see $B/logs/sshd.log" >&2
exit 1
"""


class DaemonSupervisor:
    """Starts sshd on loopback inside the container, or reuses a running one."""

    def __init__(self, cluster: ClusterControl, timeout: int = 40) -> None:
        """Initialize the supervisor.

        Args:
            cluster: Cluster-control implementation.
            timeout: Seconds allowed for the start script.
        """
        self._cluster = cluster
        self._timeout = timeout

    def ensure_running(self, endpoint: ResolvedEndpoint, restart: bool = False) -> int:
        """Make sure sshd listens on 127.0.0.1 inside the container.

        Args:
            endpoint: Target container.
            restart: Stop any running daemon first (after a fresh deploy).

        Returns:
            Loopback port sshd listens on.

        Raises:
            DaemonStartFailedError: On timeout, failure, or garbled output.
        """
        try:
            result = self._cluster.exec(
                endpoint.ref,
                [
                    "sh", "-c", START_SSHD_SCRIPT, "sh",
                    endpoint.base_dir, "1" if restart else "0",
                ],
                timeout=self._timeout,
            )
        except ClusterError as e:
            raise DaemonStartFailedError(
                f"failed to start sshd under {endpoint.base_dir}: {e}"
            ) from e

        for line in result.stderr.splitlines():
            logger.debug("%s", line)

        if not result.ok:
            raise DaemonStartFailedError(
                f"failed to start sshd under {endpoint.base_dir}: "
                f"{result.stderr or f'exit {result.returncode}'}"
            )

        output = result.text
        try:
            port = int(output.splitlines()[-1])
        except (IndexError, ValueError):
            raise DaemonStartFailedError(
                f"unexpected sshd port output: {output!r}"
            ) from None
        if not 0 < port < 65536:
            raise DaemonStartFailedError(f"sshd reported invalid port {port}")

        logger.info("sshd is listening on 127.0.0.1:%d (pod %s)", port, endpoint.pod_name)
        return port
