"""Build worker: one ephemeral process per deployment run."""
