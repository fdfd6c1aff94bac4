"""Blackbox HTTP latency/error monitor exposing Prometheus metrics."""

__version__ = "0.1.0"
