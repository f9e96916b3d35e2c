"""Bundled verification keys, used when the primary key source is unreachable."""
