"""opsync sync server."""
