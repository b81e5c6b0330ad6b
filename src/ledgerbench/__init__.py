"""Throughput benchmark and verification harness for ledger APIs."""

__version__ = "0.1.0"
