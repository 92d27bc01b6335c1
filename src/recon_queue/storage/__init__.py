"""Project record store."""
