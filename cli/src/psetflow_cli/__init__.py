"""psetflow command line interface."""
