"""Tunnel layers: address metadata, direct dialing, routing and inbound servers."""

__all__ = [
    "metadata",
    "freedom",
    "sticky",
    "router",
    "adapter",
    "socks",
    "dokodemo",
    "http_proxy",
]