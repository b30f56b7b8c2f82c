"""Shared services for docharvest."""
