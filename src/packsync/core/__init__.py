"""Core sync engine and authoritative store for packsync.

CRITICAL: Modules in this package must have NO interface (argparse) dependencies.
"""
