"""Kubernetes metrics agent: discovers cluster components, scrapes them and publishes entity metrics."""

__version__ = "0.1.0"
