"""Redis Cluster client with slot-aware routing, redirection handling and pipelines."""

__version__ = "0.1.0"