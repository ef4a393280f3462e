"""Market discovery."""
