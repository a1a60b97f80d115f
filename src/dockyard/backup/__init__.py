"""Database backup, restore and restore-test pipelines."""
