"""Settings and backing-store client factories."""
