"""
Runtime isolation — snapshot/restore reconciliation for modular runtimes.
"""

__version__ = "0.1.0"
