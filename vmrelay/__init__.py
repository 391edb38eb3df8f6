"""Remote VMware Workstation control over SSH."""

__version__ = "0.3.0"
