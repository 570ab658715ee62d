"""Controller configuration — YAML loading and structural validation."""
