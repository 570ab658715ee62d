"""Source layer — Git-backed trees, manifest loading and the source watcher."""
