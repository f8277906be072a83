"""HTTP control plane for the prepaid ad-spend credit ledger."""

__version__ = "0.1.0"
