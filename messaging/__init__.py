"""Shared messaging layer for the order pipeline.

Both services import from here so the Order Message contract, the order
status rules and the broker client live in exactly one place.
"""
