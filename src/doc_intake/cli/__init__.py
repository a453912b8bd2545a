"""Command line interface for doc-intake."""
