"""ProductBoard hierarchy sync service."""
