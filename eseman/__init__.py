"""Event-sequence indexes (cluster trees and LMDB-backed k-d trees) for binned range queries."""

__version__ = "0.1.0"

__all__ = ["agglomerate", "commons", "construct", "kdt", "node", "search", "store"]