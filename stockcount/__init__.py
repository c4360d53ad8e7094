"""Three-round stock count reconciliation service."""
