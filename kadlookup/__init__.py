"""Kademlia lookup state, provider records, routing-table refresh and value search."""

__version__ = "0.1.0"