"""Orchestration layer: background pollers for chain synchronisation."""

from deal_escrow.orchestration.pollers import SingleFlightPoller

__all__ = ["SingleFlightPoller"]
