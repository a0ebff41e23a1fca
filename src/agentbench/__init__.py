"""Benchmark core for LLM agents that call tools on MCP servers."""

__version__ = "0.1.0"
