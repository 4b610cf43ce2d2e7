"""Command-line interface for hostdeploy."""
