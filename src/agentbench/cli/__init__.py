"""Command-line interface for agentbench."""
