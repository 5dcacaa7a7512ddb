"""forest-server background services."""
