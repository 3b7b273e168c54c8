"""Command line interface for crawlhost."""
