"""Pipeline services: graph builder, job ledger, retry engine, controller and collaborators."""
