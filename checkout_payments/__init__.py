"""Order orchestration and payment reconciliation across gateway and crypto rails."""

__version__ = "0.1.0"
