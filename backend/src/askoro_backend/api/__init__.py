"""HTTP API for the Askoro backend."""
