"""
Topic Feed - Feed Synchronization & Hybrid Filtering Engine

Keeps a client-held, chronologically ordered and de-duplicated view of a
topic's stories in sync with a remote query service, with instant local
filtering, server-confirmed filtering, a degraded fallback chain and
push-driven re-synchronization.
"""

__version__ = "0.1.0"
