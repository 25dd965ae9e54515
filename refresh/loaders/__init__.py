"""Target store loaders."""
