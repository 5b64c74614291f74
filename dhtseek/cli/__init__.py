"""Command line interface for dhtseek."""
