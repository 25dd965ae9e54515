"""Warehouse source implementations."""
