"""Pagination detection and stepping."""

from .controller import PaginationController, PaginationSession, canonical_url, increment_page_url
from .probes import DEFAULT_PROBES, Probe, ProbeResult, ProbeStatus

__all__ = [
    "DEFAULT_PROBES",
    "PaginationController",
    "PaginationSession",
    "Probe",
    "ProbeResult",
    "ProbeStatus",
    "canonical_url",
    "increment_page_url",
]
