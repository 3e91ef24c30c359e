"""packsync: offline-tolerant synchronization of shared packing lists."""

__version__ = "0.1.0"
