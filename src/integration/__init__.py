"""Integration layer: persistence implementations."""
