"""IPTV ingestion core: provider sync, catalog reconciliation and live TV guides."""

__version__ = "1.0.0"
