"""Floating ENI/Elastic IP failover for keepalived-managed node pairs."""

__version__ = "0.3.0"
