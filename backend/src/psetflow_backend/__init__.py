"""psetflow HTTP service."""
