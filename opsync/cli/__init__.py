"""Command line interface for opsync."""
