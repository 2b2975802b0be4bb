"""Service applications. Each service lives under ``apps/<name>/app``."""
