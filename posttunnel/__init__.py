"""SOCKS5 proxy and DNS relay tunnelled through HTTP POST exchanges."""

__version__ = "0.1.0"