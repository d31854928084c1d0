"""A forwarding DNS proxy library with per-domain upstream routing and DoH/DoQ message helpers."""

__version__ = "0.1.0"