"""Job control and job runners for docharvest."""
