"""Proxy server and response projection."""
