"""Adapters layer for txn-audit.

Adapters implement the ports defined in the domain layer: audit stores,
schema introspectors and host transaction managers.
"""
