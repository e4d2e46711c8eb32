"""Peer discovery, wire protocol, persistence and congestion-aware bandwidth control for repository synchronisation."""

__version__ = "0.1.0"