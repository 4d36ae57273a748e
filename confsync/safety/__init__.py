"""Protected-path definitions and integrity checks."""
