"""sshpod - ProxyCommand helper for ssh/scp/sftp to Kubernetes Pods."""

__version__ = "0.1.0"
