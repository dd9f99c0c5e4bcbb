"""Shellrelay - drive interactive shells and coding-agent CLIs over WebSocket."""
