"""ELD provider integration and sync service."""
