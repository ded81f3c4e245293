"""Building blocks of a containerd v2 task shim over an OCI runtime, plus a logging-binary helper."""

__version__ = "0.1.0"