"""A forwarding DNS proxy over UDP, TCP and TLS with domain-based upstream routing."""

__version__ = "0.1.0"