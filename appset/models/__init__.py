"""Data models — rules, projects, application descriptors and sync results."""
