"""Pairing module for rac.

Holds the operator approval workflow for devices that ask for access from
a remote origin.
"""

from .workflow import DEFAULT_REQUEST_TTL, PendingRequestWorkflow

__all__ = [
    "DEFAULT_REQUEST_TTL",
    "PendingRequestWorkflow",
]
